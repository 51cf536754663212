import gzip
import io
import socket
import unittest
import zlib
from urllib.parse import urlsplit

import brotli

from host_routing import UpstreamTarget
from proxy_errors import UpstreamNetworkError
from upstream_fetch import (
    ACCEPT_ENCODING, BROWSER_USER_AGENT, build_upstream_headers, fetch, iter_request_body,
    make_decoder, translate_referer,
)

PAYLOAD = b'<html><body>' + b'hello world ' * 2000 + b'</body></html>'


def decode_in_chunks(encoding, data, size=100):
    decoder = make_decoder(encoding)
    out = [decoder.decompress(data[i:i + size]) for i in range(0, len(data), size)]
    out.append(decoder.flush())
    return b''.join(out)


class TestDecoders(unittest.TestCase):
    def test_gzip(self):
        self.assertEqual(decode_in_chunks('gzip', gzip.compress(PAYLOAD)), PAYLOAD)

    def test_deflate_zlib_wrapped(self):
        self.assertEqual(decode_in_chunks('deflate', zlib.compress(PAYLOAD)), PAYLOAD)

    def test_deflate_raw(self):
        compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        raw = compressor.compress(PAYLOAD) + compressor.flush()
        self.assertEqual(decode_in_chunks('deflate', raw), PAYLOAD)

    def test_brotli(self):
        self.assertEqual(decode_in_chunks('br', brotli.compress(PAYLOAD)), PAYLOAD)

    def test_identity(self):
        self.assertEqual(decode_in_chunks(None, PAYLOAD), PAYLOAD)
        self.assertEqual(decode_in_chunks('identity', PAYLOAD), PAYLOAD)


class TestUpstreamHeaders(unittest.TestCase):
    def setUp(self):
        self.target = UpstreamTarget(url='https://cdn.example.com/a.js', scheme='https', host='cdn.example.com')

    def test_header_rules(self):
        inbound = [
            ('Host', 'localhost:1337'),
            ('Connection', 'keep-alive'),
            ('Accept-Encoding', 'zstd'),
            ('User-Agent', 'curl/8.0'),
            ('Cookie', 'browser=1'),
            ('Accept', 'text/html'),
            ('Referer', 'http://localhost:1337/--proxy-host--/www.example.com/news/'),
        ]
        headers = build_upstream_headers(inbound, self.target, 'session=abc123', 'www.example.com')
        self.assertEqual(headers['Host'], 'cdn.example.com')
        self.assertEqual(headers['Accept-Encoding'], ACCEPT_ENCODING)
        self.assertEqual(headers['User-Agent'], BROWSER_USER_AGENT)
        self.assertEqual(headers['Cookie'], 'session=abc123')
        self.assertEqual(headers['Origin'], 'https://cdn.example.com')
        self.assertEqual(headers['Referer'], 'https://www.example.com/news/')
        self.assertEqual(headers['Accept'], 'text/html')
        self.assertNotIn('Connection', headers)
        self.assertNotIn('localhost:1337', ''.join(headers.values()))

    def test_referer_translation(self):
        self.assertEqual(translate_referer(None, self.target), 'https://cdn.example.com/')
        self.assertEqual(translate_referer('http://localhost:1337/page?x=1', self.target, 'www.example.com'),
                         'https://www.example.com/page?x=1')

    def test_no_cookie_header_when_jar_empty(self):
        headers = build_upstream_headers([], self.target, '')
        self.assertNotIn('Cookie', headers)


class TestRequestBody(unittest.TestCase):
    def test_reads_exactly_content_length(self):
        stream = io.BytesIO(b'a' * 20000 + b'EXTRA')
        chunks = list(iter_request_body(stream, 20000, chunk_size=4096))
        self.assertEqual(b''.join(chunks), b'a' * 20000)
        self.assertEqual(stream.read(), b'EXTRA')


class TestFetchErrors(unittest.TestCase):
    def test_connection_refused(self):
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.bind(('127.0.0.1', 0))
        port = s.getsockname()[1]
        s.close()
        with self.assertRaises(UpstreamNetworkError):
            fetch('GET', f'http://127.0.0.1:{port}/', {'Host': f'127.0.0.1:{port}'}, timeout=2)

    def test_malformed_hosts(self):
        for url in ('http://example.com:abc/x', 'http://a..b/x'):
            with self.assertRaises(UpstreamNetworkError, msg=url):
                fetch('GET', url, {'Host': urlsplit(url).netloc}, timeout=2)


if __name__ == '__main__':
    unittest.main()
