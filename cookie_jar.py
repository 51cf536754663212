"""
Persistent cookie jar for the upstream session.

One global, unscoped jar (name -> value) stored as ``<data-dir>/cookies.json``.
Domain/Path/Secure attributes are ignored since there is only one target.
"""

import json
import logging
import os

from proxy_errors import PersistenceError

logger = logging.getLogger(__name__)

COOKIE_FILENAME = 'cookies.json'


def parse_cookie_header(header):
    """Parse a browser ``Cookie`` header into a dict (later duplicates win)."""
    cookies = {}
    if not header:
        return cookies
    for pair in header.split(';'):
        name, sep, value = pair.strip().partition('=')
        if not sep or not name.strip():
            continue
        cookies[name.strip()] = value.strip()
    return cookies


def parse_set_cookie(value):
    """Return ``(name, value)`` from a Set-Cookie header, or None if unparseable."""
    first = value.split(';', 1)[0]
    name, sep, cookie_value = first.partition('=')
    name = name.strip()
    if not sep or not name:
        return None
    cookie_value = cookie_value.strip()
    if len(cookie_value) >= 2 and cookie_value[0] == cookie_value[-1] == '"':
        cookie_value = cookie_value[1:-1]
    return name, cookie_value


def format_cookie_header(cookies):
    return '; '.join(f'{name}={value}' for name, value in cookies.items())


class CookieJar:
    def __init__(self, data_dir):
        self.data_dir = data_dir
        self.path = os.path.join(data_dir, COOKIE_FILENAME)

    def load(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = f.read().strip()
            data = json.loads(raw or '{}')
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading {COOKIE_FILENAME}, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def save(self, cookies):
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(cookies, f, indent=2)
        except OSError as e:
            raise PersistenceError(
                f'Could not write {self.path}. Check that the data directory is '
                f'writable by the proxy process. Error: {e}'
            ) from e

    def merged_header(self, browser_header=None):
        """Stored cookies overlaid with the ones the browser presented."""
        cookies = self.load()
        cookies.update(parse_cookie_header(browser_header))
        return format_cookie_header(cookies)

    def absorb(self, set_cookie_values):
        """
        Merge upstream Set-Cookie values into the persisted jar.

        An empty value removes the cookie (upstream sign-out). Returns the
        updated mapping; nothing is written when there were no valid entries.
        """
        parsed = [p for p in (parse_set_cookie(v) for v in set_cookie_values) if p]
        if not parsed:
            return self.load()
        cookies = self.load()
        for name, value in parsed:
            if value:
                cookies[name] = value
            else:
                cookies.pop(name, None)
        self.save(cookies)
        logger.debug(f"Stored {len(parsed)} upstream cookie(s), jar size {len(cookies)}")
        return cookies

    def clear(self):
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
                logger.info("Cleared saved cookies.")
        except OSError as e:
            raise PersistenceError(
                f'Could not delete {self.path}. Check the data directory permissions. Error: {e}'
            ) from e
