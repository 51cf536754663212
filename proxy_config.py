"""
Config Store for the scaler proxy.

Settings live in ``<data-dir>/config.json`` using the camelCase keys the
settings form posts. A missing, empty or malformed file means "use the
defaults"; a partial file is merged over the defaults key by key.
"""

import json
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlsplit

from proxy_errors import PersistenceError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'config.json'

DEFAULT_CONFIG = {
    'targetUrl': 'https://www.google.com/',
    'scaleFactor': 1.0,
    'autoScroll': False,
    'scrollSpeed': 50,
    'scrollSequence': '',
}


def _number(text):
    value = float(text)
    if value != value or value in (float('inf'), float('-inf')):
        raise ValueError(f'not a finite number: {text!r}')
    return int(value) if value.is_integer() else value


def parse_scroll_sequence(text):
    """
    Parse "start-end" pairs separated by commas, e.g. ``"0-500,1200-1800"``.

    Entries that are not exactly two numbers are dropped, so ``"0-500,abc"``
    yields ``[(0, 500)]``. An empty result means "scroll the whole page".
    """
    ranges = []
    for entry in (text or '').split(','):
        parts = entry.strip().split('-')
        if len(parts) != 2:
            continue
        try:
            ranges.append((_number(parts[0].strip()), _number(parts[1].strip())))
        except ValueError:
            continue
    return ranges


@dataclass
class ProxyConfig:
    target_url: str = DEFAULT_CONFIG['targetUrl']
    scale_factor: float = DEFAULT_CONFIG['scaleFactor']
    auto_scroll: bool = DEFAULT_CONFIG['autoScroll']
    scroll_speed: int = DEFAULT_CONFIG['scrollSpeed']
    scroll_sequence: str = DEFAULT_CONFIG['scrollSequence']

    @property
    def scroll_ranges(self):
        return parse_scroll_sequence(self.scroll_sequence)

    @classmethod
    def from_dict(cls, data):
        """Merge ``data`` over the defaults; values of the wrong type fall back too."""
        merged = dict(DEFAULT_CONFIG)
        merged.update(data)
        config = cls()
        config.target_url = str(merged['targetUrl'] or DEFAULT_CONFIG['targetUrl'])
        try:
            scale = float(merged['scaleFactor'])
            if scale > 0:
                config.scale_factor = scale
        except (TypeError, ValueError):
            pass
        try:
            speed = int(merged['scrollSpeed'])
            if speed > 0:
                config.scroll_speed = speed
        except (TypeError, ValueError):
            pass
        config.auto_scroll = merged['autoScroll'] is True
        config.scroll_sequence = str(merged['scrollSequence'] or '')
        return config

    def to_dict(self):
        return {
            'targetUrl': self.target_url,
            'scaleFactor': self.scale_factor,
            'autoScroll': self.auto_scroll,
            'scrollSpeed': self.scroll_speed,
            'scrollSequence': self.scroll_sequence,
        }


def config_from_form(form, proxy_host=None):
    """
    Build a ProxyConfig from the settings form fields.

    ``form`` maps field names to single string values. Raises ValueError with
    a message suitable for showing to the operator.
    """
    target_url = (form.get('targetUrl') or '').strip()
    parts = urlsplit(target_url)
    if parts.scheme not in ('http', 'https') or not parts.netloc:
        raise ValueError(f'Target URL "{target_url}" is not a valid absolute http(s) URL.')
    if proxy_host and proxy_host in target_url:
        raise ValueError('Target URL cannot be the proxy address.')

    try:
        scale_factor = float(form.get('scaleFactor', ''))
    except ValueError:
        raise ValueError('Scale factor must be a number.')
    if not scale_factor > 0 or scale_factor == float('inf'):
        raise ValueError('Scale factor must be greater than zero.')

    try:
        scroll_speed = int(form.get('scrollSpeed', ''))
    except ValueError:
        raise ValueError('Scroll speed must be a whole number of pixels per second.')
    if scroll_speed <= 0:
        raise ValueError('Scroll speed must be greater than zero.')

    return ProxyConfig(
        target_url=target_url,
        scale_factor=scale_factor,
        auto_scroll=form.get('autoScroll') == 'on',
        scroll_speed=scroll_speed,
        scroll_sequence=(form.get('scrollSequence') or '').strip(),
    )


class ConfigStore:
    """Loads and persists ProxyConfig. Nothing is cached between calls."""

    def __init__(self, data_dir):
        self.data_dir = data_dir
        self.path = os.path.join(data_dir, CONFIG_FILENAME)

    def load(self):
        if not os.path.exists(self.path):
            return ProxyConfig()
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = f.read().strip()
            data = json.loads(raw or '{}')
            if not isinstance(data, dict):
                raise ValueError('config root is not an object')
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading config, using defaults: {e}")
            return ProxyConfig()
        return ProxyConfig.from_dict(data)

    def save(self, config):
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(config.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save configuration to {self.path}: {e}")
            raise PersistenceError(
                f'Could not write {self.path}. Check that the data directory exists '
                f'and is writable by the proxy process. Error: {e}'
            ) from e
        logger.info(f"Saved configuration: target={config.target_url} scale={config.scale_factor}")

    def reset(self):
        config = ProxyConfig()
        self.save(config)
        return config
