"""
Response Rewriter for proxied HTML documents.

The whole transformation sits behind ``rewrite(body, context)``. It is plain
regex/string surgery, not an HTML parser: URLs inside inline scripts or with
unusual quoting may be missed or mis-rewritten.

Order of the passes matters. Absolute URLs are rewritten first and produce
absolute proxy URLs, which the relative pass never matches again, so nothing
is encoded twice.
"""

import codecs
import ipaddress
import json
import logging
import re
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

from host_routing import PROXY_HOST_PREFIX, encode_proxy_path

logger = logging.getLogger(__name__)

HEIGHT_REPORT_DELAY_MS = 2000
SCROLL_PAUSE_MS = 3000

STRIPPED_RESPONSE_HEADERS = (
    'content-security-policy', 'x-frame-options', 'transfer-encoding',
    'content-encoding', 'content-length', 'set-cookie',
    'connection', 'keep-alive',
)

_ABSOLUTE_URL = re.compile(r'''(["'])((?:https?:)?//)([^/"'\s<>?#\\]+)''', re.IGNORECASE)
_URL_ATTRIBUTE = re.compile(r'''\b(src|href|action)=(?:"([^"]*)"|'([^']*)')''', re.IGNORECASE)
_NOT_RELATIVE = re.compile(r'^(?:[a-zA-Z][a-zA-Z0-9+.\-]*:|//|#)')
_TAG = re.compile(r'<[a-zA-Z][^>]*>')
_INTEGRITY_ATTR = re.compile(r'''\s+integrity\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)''', re.IGNORECASE)
_CROSSORIGIN_ATTR = re.compile(
    r'''\s+crossorigin(?:\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+))?(?=[\s/>])''', re.IGNORECASE
)
_CSP_META = re.compile(
    r'''<meta\b[^>]*http-equiv\s*=\s*["']?content-security-policy["']?[^>]*>''', re.IGNORECASE
)
_HEAD_OPEN = re.compile(r'<head\b[^>]*>', re.IGNORECASE)


@dataclass
class RewriteContext:
    proxy_origin: str  # scheme://host[:port] of the proxy as the browser sees it
    proxy_host: str
    target_host: str  # configured target host[:port]
    current_url: str  # upstream URL this document was fetched from
    config: object  # ProxyConfig

    @property
    def current_host(self):
        return urlsplit(self.current_url).netloc

    @property
    def current_path(self):
        return urlsplit(self.current_url).path or '/'


def _hostname(host):
    """Drop any port from ``host[:port]`` (IPv6 literals keep their brackets)."""
    if host.startswith('['):
        return host.split(']', 1)[0] + ']'
    return host.rsplit(':', 1)[0] if host.count(':') == 1 else host


def registrable_domain(host):
    """
    Last two DNS labels of ``host``, e.g. ``static.cdn.example.com`` -> ``example.com``.

    IP literals and single-label names (``localhost``) only match themselves.
    """
    name = _hostname(host).lower().strip('[]').rstrip('.')
    try:
        ipaddress.ip_address(name)
        return name
    except ValueError:
        pass
    labels = name.split('.')
    if len(labels) < 2:
        return name
    return '.'.join(labels[-2:])


def _in_domains(host, domains):
    name = _hostname(host).lower().strip('[]').rstrip('.')
    return any(name == d or name.endswith('.' + d) for d in domains)


def rewrite_absolute_urls(body, ctx):
    domains = {registrable_domain(ctx.target_host), registrable_domain(ctx.current_host)}
    proxy_host = ctx.proxy_host.lower()

    def replace(match):
        quote, host = match.group(1), match.group(3)
        if host.lower() == proxy_host or not _in_domains(host, domains):
            return match.group(0)
        return f'{quote}{ctx.proxy_origin}{PROXY_HOST_PREFIX}{host}'

    return _ABSOLUTE_URL.sub(replace, body)


def rewrite_relative_urls(body, ctx):
    current_host = ctx.current_host
    base_path = ctx.current_path

    def replace(match):
        attr = match.group(1)
        if match.group(2) is not None:
            quote, value = '"', match.group(2)
        else:
            quote, value = "'", match.group(3)
        if not value or value != value.strip() or _NOT_RELATIVE.match(value):
            return match.group(0)
        if value.startswith(PROXY_HOST_PREFIX):
            return match.group(0)
        path = value if value.startswith('/') else urljoin(base_path, value)
        return f'{attr}={quote}{encode_proxy_path(current_host, path)}{quote}'

    return _URL_ATTRIBUTE.sub(replace, body)


def strip_integrity(body):
    def clean(match):
        tag = match.group(0)
        lower = tag.lower()
        if 'integrity' not in lower and 'crossorigin' not in lower:
            return tag
        tag = _INTEGRITY_ATTR.sub('', tag)
        return _CROSSORIGIN_ATTR.sub('', tag)

    return _TAG.sub(clean, body)


def strip_csp_meta(body):
    return _CSP_META.sub('', body)


SCALE_STYLE = (
    '<style>body{transform:scale(%%SCALE%%);transform-origin:0 0;'
    'width:%%WIDTH%%%;overflow-x:hidden;}</style>'
)

SERVICE_WORKER_SCRIPT = '''<script>
if ('serviceWorker' in navigator) {
  navigator.serviceWorker.getRegistrations().then(function (registrations) {
    registrations.forEach(function (registration) { registration.unregister(); });
  });
}
</script>'''

HEIGHT_REPORT_SCRIPT = '''<script>
window.addEventListener('load', function () {
  setTimeout(function () {
    fetch('/report-height', {
      method: 'POST',
      headers: {'Content-Type': 'application/json'},
      body: JSON.stringify({height: document.documentElement.scrollHeight})
    });
  }, %%DELAY%%);
});
</script>'''

LIVE_RELOAD_SCRIPT = '''<script>
(function () {
  var socket = new WebSocket((location.protocol === 'https:' ? 'wss:' : 'ws:') + '//' + location.host + '/');
  socket.addEventListener('message', function (event) {
    if (event.data === 'reload') location.reload();
  });
})();
</script>'''

# Ranges are parsed server side; an empty list means "whole page".
AUTO_SCROLL_SCRIPT = '''<script>
(function () {
  var config = %%SCROLL_CONFIG%%;
  document.addEventListener('DOMContentLoaded', function () {
    var maxScroll = Math.max(0, document.documentElement.scrollHeight - window.innerHeight);
    var ranges = config.ranges.map(function (r) {
      return {start: r[0], end: Math.min(r[1], maxScroll)};
    });
    if (ranges.length === 0) ranges.push({start: 0, end: maxScroll});
    var index = 0, position = ranges[0].start, lastTime = 0, pauseUntil = 0;
    function step(timestamp) {
      if (!lastTime) lastTime = timestamp;
      var elapsed = timestamp - lastTime;
      lastTime = timestamp;
      if (Date.now() >= pauseUntil) {
        position += config.speed * elapsed / 1000;
        window.scrollTo(0, position);
        if (position >= ranges[index].end) {
          index = (index + 1) % ranges.length;
          position = ranges[index].start;
          window.scrollTo(0, position);
          pauseUntil = Date.now() + config.pauseMs;
        }
      }
      requestAnimationFrame(step);
    }
    window.scrollTo(0, position);
    requestAnimationFrame(step);
  });
})();
</script>'''


def build_injection(config):
    scale = config.scale_factor
    parts = [
        SCALE_STYLE.replace('%%SCALE%%', repr(scale)).replace('%%WIDTH%%', repr(100 / scale)),
        SERVICE_WORKER_SCRIPT,
        HEIGHT_REPORT_SCRIPT.replace('%%DELAY%%', str(HEIGHT_REPORT_DELAY_MS)),
        LIVE_RELOAD_SCRIPT,
    ]
    if config.auto_scroll:
        scroll_config = {
            'speed': config.scroll_speed,
            'ranges': [list(r) for r in config.scroll_ranges],
            'pauseMs': SCROLL_PAUSE_MS,
        }
        # </ would end the script element early
        payload = json.dumps(scroll_config).replace('</', '<\\/')
        parts.append(AUTO_SCROLL_SCRIPT.replace('%%SCROLL_CONFIG%%', payload))
    return ''.join(parts)


def inject_head(body, injection):
    match = _HEAD_OPEN.search(body)
    if not match:
        return injection + body
    return body[:match.end()] + injection + body[match.end():]


def rewrite(body, context):
    """Rewrite a decoded HTML document for display through the proxy."""
    body = rewrite_absolute_urls(body, context)
    body = rewrite_relative_urls(body, context)
    body = strip_integrity(body)
    body = strip_csp_meta(body)
    return inject_head(body, build_injection(context.config))


def rewrite_document(raw, charset, context):
    """
    Bytes in, bytes out.

    Bytes that do not decode in ``charset`` (e.g. a page that only declares
    its real encoding in a meta tag) pass through unchanged.
    """
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.debug(f"Unknown charset {charset!r}, falling back to utf-8")
        charset = 'utf-8'
    text = raw.decode(charset, errors='surrogateescape')
    return rewrite(text, context).encode(charset, errors='surrogateescape')


def filter_response_headers(headers):
    return [(k, v) for k, v in headers if k.lower() not in STRIPPED_RESPONSE_HEADERS]
