from urllib.parse import urljoin, urlsplit

from host_routing import encode_proxy_path
from proxy_errors import MissingLocationError

REDIRECT_STATUSES = (301, 302, 303, 307, 308)


def is_redirect(status):
    return status in REDIRECT_STATUSES


def translate_redirect(status, location, target, proxy_origin):
    """
    Rewrite an upstream Location into a proxy URL.

    Relative locations are resolved against the upstream origin, so
    ``/dashboard`` from example.com becomes
    ``<proxy_origin>/--proxy-host--/example.com/dashboard``.
    """
    if not location:
        raise MissingLocationError(status)
    resolved = urlsplit(urljoin(target.origin + '/', location))
    path = resolved.path or '/'
    if resolved.query:
        path += '?' + resolved.query
    return proxy_origin + encode_proxy_path(resolved.netloc, path)
