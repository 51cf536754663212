#!/usr/bin/env python3
"""
Web Scaler Proxy

Fetches a single configured website through a reverse proxy and rewrites its
HTML so it can be shown scaled and auto-scrolled on a display, reloading
connected viewers whenever the settings change.

  GET  /                       - proxied target page
  GET  /--proxy-host--/<host>/ - proxied sub-resource on another host
  GET  /config                 - settings form
  POST /config                 - save settings, reload viewers
  POST /reset                  - restore default settings
  POST /clear-cookies          - forget the upstream session
  POST /report-height          - page height reported by the display
  WS   /                       - live-reload channel
  OPTIONS *                    - CORS preflight, answered locally
"""

import argparse
import http.server
import json
import logging
import math
import os
import socket
import socketserver
import threading
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from config_page import render_config_page, render_error_page
from cookie_jar import CookieJar
from host_routing import resolve_upstream
from html_rewriter import RewriteContext, filter_response_headers, rewrite_document
from live_reload import LiveReloadBroadcaster
from proxy_config import ConfigStore, config_from_form
from proxy_errors import PersistenceError, ProxyError, UpstreamNetworkError
from redirect_translator import is_redirect, translate_redirect
from upstream_fetch import DEFAULT_TIMEOUT, build_upstream_headers, fetch, iter_request_body

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
BRIDGE_CHUNK_SIZE = 8192
CORS_METHODS = 'GET, HEAD, PUT, PATCH, POST, DELETE'


@dataclass
class ServerSettings:
    host: str = '0.0.0.0'
    port: int = 1337
    data_dir: str = 'data'
    upstream_timeout: float = DEFAULT_TIMEOUT
    log_level: str = 'INFO'


def _pipe(src, dst):
    """Copy bytes until EOF, then half-close ``dst``."""
    try:
        while True:
            data = src.recv(BRIDGE_CHUNK_SIZE)
            if not data:
                break
            dst.sendall(data)
    except OSError:
        pass
    finally:
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class ScalerProxyHandler(http.server.BaseHTTPRequestHandler):
    server_version = 'WebScalerProxy/1.0'
    _allow_origin_sent = False

    def do_GET(self): self.route('GET')
    def do_POST(self): self.route('POST')
    def do_HEAD(self): self.route('HEAD')
    def do_PUT(self): self.route('PUT')
    def do_DELETE(self): self.route('DELETE')
    def do_PATCH(self): self.route('PATCH')
    def do_OPTIONS(self): self.route('OPTIONS')

    def log_message(self, format, *args):
        logger.info(f"{self.address_string()} - {format % args}")

    def send_header(self, keyword, value):
        if keyword.lower() == 'access-control-allow-origin':
            self._allow_origin_sent = True
        super().send_header(keyword, value)

    def end_headers(self):
        # Every response is readable cross-origin unless upstream chose otherwise
        if not self._allow_origin_sent:
            super().send_header('Access-Control-Allow-Origin', '*')
        self._allow_origin_sent = False
        super().end_headers()

    @property
    def proxy_host(self):
        host = self.headers.get('Host')
        if host:
            return host.strip()
        address, port = self.server.server_address[:2]
        return f'{address}:{port}'

    @property
    def proxy_origin(self):
        proto = self.headers.get('X-Forwarded-Proto', 'http').split(',')[0].strip() or 'http'
        return f'{proto}://{self.proxy_host}'

    def route(self, method):
        path = urlsplit(self.path).path

        if path == '/' and method == 'GET' and self.headers.get('Upgrade', '').lower() == 'websocket':
            return self.bridge_websocket()
        if method == 'OPTIONS':
            return self.handle_preflight()
        if path == '/favicon.ico' and method == 'GET':
            self.send_response(204)
            self.end_headers()
            return
        if path == '/config' and method == 'GET':
            return self.handle_config_page()
        if path == '/config' and method == 'POST':
            return self.handle_save_config()
        if path == '/reset' and method == 'POST':
            return self.handle_reset()
        if path == '/clear-cookies' and method == 'POST':
            return self.handle_clear_cookies()
        if path == '/report-height' and method == 'POST':
            return self.handle_report_height()
        return self.proxy_request(method)

    # --- small response helpers ---

    def _content_length(self):
        try:
            return max(0, int(self.headers.get('Content-Length') or 0))
        except ValueError:
            return 0

    def _read_body(self):
        length = self._content_length()
        return self.rfile.read(length) if length else b''

    def _read_form(self):
        fields = parse_qs(self._read_body().decode('utf-8', errors='replace'), keep_blank_values=True)
        return {k: v[0] for k, v in fields.items()}

    def send_html(self, status, page):
        body = page.encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'text/html; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)

    def send_json(self, status, data):
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_redirect_to(self, location, status=302):
        self.send_response(status)
        self.send_header('Location', location)
        self.send_header('Content-Length', '0')
        self.end_headers()

    def send_error_page(self, error):
        self.send_html(error.status, render_error_page(error.title, error.message, error.link_to_config))

    def handle_preflight(self):
        self.send_response(204)
        self.send_header('Access-Control-Allow-Methods', CORS_METHODS)
        requested = self.headers.get('Access-Control-Request-Headers')
        if requested:
            self.send_header('Access-Control-Allow-Headers', requested)
            self.send_header('Vary', 'Access-Control-Request-Headers')
        self.send_header('Content-Length', '0')
        self.end_headers()

    # --- settings routes ---

    def handle_config_page(self):
        query = parse_qs(urlsplit(self.path).query)
        page = render_config_page(
            self.server.config_store.load(),
            last_height=self.server.last_reported_height,
            saved=bool(query.get('saved', [''])[0]),
            viewers=self.server.broadcaster.client_count,
        )
        self.send_html(200, page)

    def handle_save_config(self):
        try:
            config = config_from_form(self._read_form(), self.proxy_host)
        except ValueError as e:
            return self.send_html(400, render_error_page('Invalid Settings', str(e), link_to_config=True))
        try:
            self.server.config_store.save(config)
        except PersistenceError as e:
            logger.error(f"!!! CRITICAL: Failed to save configuration: {e}")
            return self.send_error_page(e)
        self.server.broadcaster.broadcast()
        self.send_redirect_to('/config?saved=true')

    def handle_reset(self):
        try:
            self.server.config_store.reset()
        except PersistenceError as e:
            logger.error(f"!!! CRITICAL: Failed to reset configuration: {e}")
            return self.send_error_page(e)
        self.server.broadcaster.broadcast()
        self.send_redirect_to('/config')

    def handle_clear_cookies(self):
        try:
            self.server.cookie_jar.clear()
        except PersistenceError as e:
            logger.error(f"!!! CRITICAL: Failed to clear cookies: {e}")
            return self.send_error_page(e)
        # Reload so a signed-out state shows immediately
        self.server.broadcaster.broadcast()
        self.send_redirect_to('/config')

    def handle_report_height(self):
        try:
            data = json.loads(self._read_body() or b'{}')
        except ValueError:
            data = None
        height = data.get('height') if isinstance(data, dict) else None
        if (isinstance(height, bool) or not isinstance(height, (int, float))
                or not math.isfinite(height) or height < 0):
            return self.send_json(400, {'message': 'Invalid height data'})
        self.server.last_reported_height = round(height)
        logger.info(f"Received page height: {self.server.last_reported_height}px")
        self.send_json(200, {'message': 'Height received'})

    # --- live reload ---

    def bridge_websocket(self):
        """Hand the upgrade request and the raw socket to the live-reload server."""
        try:
            ws = socket.create_connection(('127.0.0.1', self.server.broadcaster.port), timeout=5)
        except OSError as e:
            logger.error(f"Live-reload server unreachable: {e}")
            self.send_error(502, 'Live-reload channel unavailable')
            return
        ws.settimeout(None)
        lines = [self.requestline] + [f'{k}: {v}' for k, v in self.headers.items()]
        ws.sendall(('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1'))

        self.close_connection = True
        to_client = threading.Thread(target=_pipe, args=(ws, self.connection), daemon=True)
        to_client.start()
        _pipe(self.connection, ws)
        to_client.join()
        ws.close()

    # --- proxy pipeline ---

    def proxy_request(self, method):
        config = self.server.config_store.load()
        upstream = None
        try:
            target = resolve_upstream(self.path, config, self.proxy_host)
            configured_host = urlsplit(config.target_url).netloc
            cookie_header = self.server.cookie_jar.merged_header(self.headers.get('Cookie'))
            headers = build_upstream_headers(self.headers.items(), target, cookie_header, configured_host)

            body = None
            length = self._content_length()
            if method not in ('GET', 'HEAD') and length:
                body = iter_request_body(self.rfile, length)

            upstream = fetch(method, target.url, headers, body, timeout=self.server.settings.upstream_timeout)

            set_cookies = upstream.get_all('Set-Cookie')
            if set_cookies:
                self.server.cookie_jar.absorb(set_cookies)

            if is_redirect(upstream.status):
                location = translate_redirect(upstream.status, upstream.get('Location'), target, self.proxy_origin)
                logger.info(f"Redirecting to: {location}")
                self.send_response(upstream.status)
                self.send_header('Location', location)
                for value in set_cookies:
                    self.send_header('Set-Cookie', value)
                self.send_header('Content-Length', '0')
                self.end_headers()
            elif upstream.is_html and method != 'HEAD':
                context = RewriteContext(
                    proxy_origin=self.proxy_origin,
                    proxy_host=self.proxy_host,
                    target_host=configured_host,
                    current_url=target.url,
                    config=config,
                )
                page = rewrite_document(upstream.read_body(), upstream.charset(), context)
                self._send_upstream_head(upstream, set_cookies)
                self.send_header('Content-Length', str(len(page)))
                self.end_headers()
                self.wfile.write(page)
            else:
                self._send_upstream_head(upstream, set_cookies)
                self.end_headers()
                if method != 'HEAD':
                    self._stream_body(upstream)
        except ProxyError as e:
            logger.error(f"Proxy error: {e.message}")
            self.send_error_page(e)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"Client disconnected during {self.path}")
            self.close_connection = True
        finally:
            if upstream:
                upstream.close()

    def _send_upstream_head(self, upstream, set_cookies):
        # Upstream supplies its own Date/Server headers
        self.log_request(upstream.status)
        self.send_response_only(upstream.status, upstream.reason)
        for k, v in filter_response_headers(upstream.headers):
            self.send_header(k, v)
        for value in set_cookies:
            self.send_header('Set-Cookie', value)

    def _stream_body(self, upstream):
        """Pipe decoded bytes through; headers are already out so failures only close the connection."""
        self.close_connection = True
        try:
            for chunk in upstream.iter_body():
                self.wfile.write(chunk)
        except UpstreamNetworkError as e:
            logger.error(f"Upstream stream failed for {upstream.url}: {e.message}")


class ThreadedHTTPServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, settings, broadcaster, handler_class=ScalerProxyHandler):
        super().__init__((settings.host, settings.port), handler_class)
        self.settings = settings
        self.broadcaster = broadcaster
        self.config_store = ConfigStore(settings.data_dir)
        self.cookie_jar = CookieJar(settings.data_dir)
        self.last_reported_height = 'N/A'

    def server_close(self):
        super().server_close()
        self.broadcaster.stop()


def create_server(settings):
    """Start the live-reload channel and bind the HTTP server (not yet serving)."""
    broadcaster = LiveReloadBroadcaster()
    broadcaster.start()
    try:
        return ThreadedHTTPServer(settings, broadcaster)
    except OSError:
        broadcaster.stop()
        raise


def parse_args(argv=None):
    env = os.environ
    parser = argparse.ArgumentParser(description='Scale and auto-scroll a website through a reverse proxy')
    parser.add_argument('--host', default=env.get('SCALER_HOST', '0.0.0.0'),
                        help='Listen address (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=int(env.get('SCALER_PORT', 1337)),
                        help='Listen port (default: 1337)')
    parser.add_argument('--data-dir', default=env.get('SCALER_DATA_DIR', 'data'),
                        help='Directory for config.json and cookies.json (default: ./data)')
    parser.add_argument('--upstream-timeout', type=float,
                        default=float(env.get('SCALER_UPSTREAM_TIMEOUT', DEFAULT_TIMEOUT)),
                        help='Seconds to wait on the upstream site (default: 60)')
    parser.add_argument('--log-level', default=env.get('SCALER_LOG_LEVEL', 'INFO'),
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    args = parser.parse_args(argv)
    return ServerSettings(
        host=args.host,
        port=args.port,
        data_dir=args.data_dir,
        upstream_timeout=args.upstream_timeout,
        log_level=args.log_level,
    )


def main(argv=None):
    settings = parse_args(argv)
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    server = create_server(settings)
    config = server.config_store.load()

    print("=" * 60)
    print("Web Scaler Proxy")
    print("=" * 60)
    print(f"Listening:  http://{settings.host}:{settings.port}")
    print(f"Settings:   http://{settings.host}:{settings.port}/config")
    print(f"Data dir:   {os.path.abspath(settings.data_dir)}")
    print(f"Target:     {config.target_url} (scale {config.scale_factor})")
    print("\nPress Ctrl+C to stop\n")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        server.server_close()


if __name__ == '__main__':
    main()
