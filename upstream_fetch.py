"""
Upstream Fetcher - outbound requests to the proxied site.

Uses http.client directly so redirects are never followed and bodies arrive
still compressed; decoding happens here, chunk by chunk, so large media can be
streamed without buffering.
"""

import http.client
import logging
import ssl
import zlib
from urllib.parse import urlsplit

import brotli

from host_routing import strip_proxy_prefix
from proxy_errors import UpstreamNetworkError

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36'
)
ACCEPT_ENCODING = 'gzip, deflate, br'
CHUNK_SIZE = 8192
DEFAULT_TIMEOUT = 60

HOP_BY_HOP = (
    'connection', 'keep-alive', 'proxy-authorization', 'proxy-authenticate',
    'proxy-connection', 'te', 'trailer', 'transfer-encoding', 'upgrade',
)
# Replaced with upstream-specific values in build_upstream_headers
REPLACED = ('host', 'cookie', 'accept-encoding', 'user-agent', 'origin', 'referer')


class _IdentityDecoder:
    def decompress(self, data):
        return data

    def flush(self):
        return b''


class _ZlibDecoder:
    def __init__(self, wbits):
        self._obj = zlib.decompressobj(wbits)

    def decompress(self, data):
        return self._obj.decompress(data)

    def flush(self):
        return self._obj.flush()


class _DeflateDecoder:
    """'deflate' is zlib-wrapped per RFC, but some servers send raw deflate"""

    def __init__(self):
        self._obj = None

    def decompress(self, data):
        if self._obj is None:
            self._obj = zlib.decompressobj(zlib.MAX_WBITS)
            try:
                return self._obj.decompress(data)
            except zlib.error:
                self._obj = zlib.decompressobj(-zlib.MAX_WBITS)
        return self._obj.decompress(data)

    def flush(self):
        return self._obj.flush() if self._obj else b''


class _BrotliDecoder:
    def __init__(self):
        self._obj = brotli.Decompressor()

    def decompress(self, data):
        return self._obj.process(data)

    def flush(self):
        return b''


def make_decoder(content_encoding):
    encoding = (content_encoding or '').strip().lower()
    if encoding in ('gzip', 'x-gzip'):
        return _ZlibDecoder(16 + zlib.MAX_WBITS)
    if encoding == 'deflate':
        return _DeflateDecoder()
    if encoding == 'br':
        return _BrotliDecoder()
    return _IdentityDecoder()


def build_upstream_headers(inbound_headers, target, cookie_header='', configured_host=None):
    """
    Headers for the outbound request.

    ``inbound_headers`` is an iterable of (name, value) pairs from the browser.
    Origin and Referer point at the upstream; a Referer that still carries the
    reserved proxy prefix is translated back to the real upstream URL.
    """
    headers = {}
    referer = None
    for k, v in inbound_headers:
        lower = k.lower()
        if lower == 'referer':
            referer = v
        if lower in HOP_BY_HOP or lower in REPLACED:
            continue
        headers[k] = v

    headers['Host'] = target.host
    headers['User-Agent'] = BROWSER_USER_AGENT
    headers['Accept-Encoding'] = ACCEPT_ENCODING
    headers['Origin'] = target.origin
    headers['Referer'] = translate_referer(referer, target, configured_host)
    if cookie_header:
        headers['Cookie'] = cookie_header
    return headers


def translate_referer(referer, target, configured_host=None):
    if not referer:
        return target.origin + '/'
    parts = urlsplit(referer)
    request_path = parts.path or '/'
    if parts.query:
        request_path += '?' + parts.query
    host, path = strip_proxy_prefix(request_path, configured_host or target.host)
    return f'{target.scheme}://{host}{path}'


def iter_request_body(rfile, length, chunk_size=CHUNK_SIZE):
    """Yield exactly ``length`` bytes from the inbound body stream."""
    remaining = length
    while remaining > 0:
        chunk = rfile.read(min(chunk_size, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


class UpstreamResponse:
    def __init__(self, conn, response, url):
        self._conn = conn
        self._response = response
        self.url = url
        self.status = response.status
        self.reason = response.reason
        self.headers = response.getheaders()

    def get(self, name, default=None):
        return self._response.getheader(name, default)

    def get_all(self, name):
        return self._response.msg.get_all(name) or []

    @property
    def content_type(self):
        return self.get('Content-Type', '') or ''

    @property
    def is_html(self):
        return 'text/html' in self.content_type.lower()

    def iter_body(self, chunk_size=CHUNK_SIZE):
        """Decoded body chunks; decode and read failures raise UpstreamNetworkError."""
        decoder = make_decoder(self.get('Content-Encoding'))
        try:
            while True:
                chunk = self._response.read(chunk_size)
                if not chunk:
                    break
                data = decoder.decompress(chunk)
                if data:
                    yield data
            tail = decoder.flush()
            if tail:
                yield tail
        except (OSError, http.client.HTTPException, zlib.error, brotli.error) as e:
            raise UpstreamNetworkError(f'Error reading response from {self.url}: {e}') from e

    def read_body(self):
        return b''.join(self.iter_body())

    def charset(self, default='utf-8'):
        charset = self._response.msg.get_content_charset()
        return charset or default

    def close(self):
        # For will-close responses http.client hands the socket to the response
        self._response.close()
        self._conn.close()


def fetch(method, url, headers, body=None, timeout=DEFAULT_TIMEOUT):
    """
    Issue a single outbound request and return the (unread) response.

    Any HTTP status is a valid response. Network level failures raise
    UpstreamNetworkError; nothing is retried.
    """
    conn = None
    try:
        # A bad port or an unencodable host label surfaces as ValueError
        parts = urlsplit(url)
        path = parts.path or '/'
        if parts.query:
            path += '?' + parts.query

        if parts.scheme == 'https':
            conn = http.client.HTTPSConnection(
                parts.hostname, parts.port, timeout=timeout, context=ssl.create_default_context()
            )
        else:
            conn = http.client.HTTPConnection(parts.hostname, parts.port, timeout=timeout)
        conn.request(method, path, body=body, headers=headers)
        response = conn.getresponse()
    except (OSError, ValueError, http.client.HTTPException) as e:
        if conn:
            conn.close()
        logger.error(f"Upstream request failed: {method} {url} - {e}")
        raise UpstreamNetworkError(f'{e.__class__.__name__}: {e}') from e

    logger.debug(f"{method} {url} -> {response.status}")
    return UpstreamResponse(conn, response, url)
