"""
Error kinds surfaced by the scaler proxy.

Every error carries a short title and a human-readable message; the HTTP
handler turns them into an HTML page with the matching status code.
"""


class ProxyError(Exception):
    """Base class for errors rendered as an error page"""
    title = 'Proxy Error'
    status = 500
    link_to_config = False

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ConfigurationError(ProxyError):
    """Target URL is invalid or points back at the proxy itself"""
    title = 'Configuration Error'
    link_to_config = True


class UpstreamNetworkError(ProxyError):
    """DNS, connect, TLS, timeout or stream failure talking to the upstream"""
    title = 'Proxy Error'


class PersistenceError(ProxyError):
    """Settings or cookie file could not be written"""
    title = 'Error Saving Data'
    link_to_config = True


class MissingLocationError(ProxyError):
    """Upstream sent a redirect status without a Location header"""
    title = 'Redirect Error'

    def __init__(self, status):
        super().__init__('Redirect with no location header')
        self.status = status
