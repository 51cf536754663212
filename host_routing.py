"""
Host/Path resolution for proxied requests.

Sub-resources living on a different hostname than the main page are addressed
through a reserved path prefix that embeds the upstream host:

    /--proxy-host--/cdn.example.com/assets/app.js
"""

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from proxy_errors import ConfigurationError

PROXY_HOST_PREFIX = '/--proxy-host--/'

_PREFIXED_PATH = re.compile(r'^' + re.escape(PROXY_HOST_PREFIX) + r'([^/?#]+)(.*)$', re.DOTALL)


@dataclass
class UpstreamTarget:
    url: str
    scheme: str
    host: str  # host[:port]

    @property
    def origin(self):
        return f'{self.scheme}://{self.host}'

    @property
    def path(self):
        return urlsplit(self.url).path or '/'


def encode_proxy_path(host, path='/'):
    """``("cdn.example.com", "/a/b")`` -> ``/--proxy-host--/cdn.example.com/a/b``"""
    if not path.startswith('/'):
        path = '/' + path
    return f'{PROXY_HOST_PREFIX}{host}{path}'


def decode_proxy_path(request_path):
    """
    Split a prefixed request path into ``(host, path)``.

    Returns None for paths without the prefix. Duplicate slashes in the path
    part are collapsed; the query string is kept as-is.
    """
    match = _PREFIXED_PATH.match(request_path)
    if not match:
        return None
    host, rest = match.group(1), match.group(2)
    path, sep, query = rest.partition('?')
    path = re.sub(r'/+', '/', '/' + path)
    return host, path + sep + query


def strip_proxy_prefix(request_path, default_host):
    """Translate a proxy path back to ``(host, path)``; unprefixed paths keep ``default_host``."""
    decoded = decode_proxy_path(request_path)
    if decoded:
        return decoded
    return default_host, request_path or '/'


def parse_target(config, proxy_host=None):
    """Validate the configured target URL; returns its SplitResult."""
    target_url = config.target_url
    if proxy_host and proxy_host in target_url:
        raise ConfigurationError(
            'Target URL cannot be the proxy address. Configure a different URL.'
        )
    try:
        parts = urlsplit(target_url)
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        parts = None
    if parts is None or parts.scheme not in ('http', 'https') or not parts.hostname:
        raise ConfigurationError(
            f'URL "{target_url}" is not valid. Please correct it.'
        )
    return parts


def resolve_upstream(request_path, config, proxy_host=None):
    """
    Map an inbound request path (path + query) to an UpstreamTarget.

    ``/`` maps to the full configured URL so the target may be a deep link;
    any other path is taken relative to the target origin, or to the host
    embedded in the reserved prefix.
    """
    target = parse_target(config, proxy_host)
    scheme, host = target.scheme, target.netloc

    decoded = decode_proxy_path(request_path)
    if decoded:
        host, path = decoded
        return UpstreamTarget(url=f'{scheme}://{host}{path}', scheme=scheme, host=host)

    if request_path == '/':
        return UpstreamTarget(url=config.target_url, scheme=scheme, host=host)
    if not request_path.startswith('/'):
        request_path = '/' + request_path
    return UpstreamTarget(url=f'{scheme}://{host}{request_path}', scheme=scheme, host=host)
