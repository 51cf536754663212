"""
Settings form and error pages.

Templates use %%PLACEHOLDER%% markers; every value is HTML-escaped before it
is substituted.
"""

import html
import os
import re

import psutil

CONFIG_TEMPLATE = '''<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Web Scaler Proxy - Settings</title>
<style>
  body { font-family: sans-serif; max-width: 640px; margin: 40px auto; background: #1e1e1e; color: #ddd; }
  form, .panel { background: #2a2a2a; padding: 20px 24px; border-radius: 8px; margin-bottom: 16px; }
  label { display: block; margin-top: 12px; font-weight: bold; }
  input[type=text], input[type=url], input[type=number] { width: 100%; padding: 8px; box-sizing: border-box; }
  button { margin-top: 16px; padding: 10px 18px; border: none; border-radius: 4px; cursor: pointer; }
  .banner { display: none; background: #2e7d32; color: #fff; padding: 10px; border-radius: 4px; }
  .banner.success { display: block; }
  .hint { font-size: 0.85em; color: #999; }
  .inline { display: inline-block; }
</style>
</head>
<body>
<h1>Web Scaler Proxy</h1>
<div class="banner %%SUCCESS_CLASS%%">Settings saved. Connected viewers are reloading.</div>
<form method="POST" action="/config">
  <label for="targetUrl">Target URL</label>
  <input type="url" id="targetUrl" name="targetUrl" value="%%TARGET_URL%%" required>
  <label for="scaleFactor">Scale factor</label>
  <input type="number" id="scaleFactor" name="scaleFactor" step="0.05" min="0.05" value="%%SCALE_FACTOR%%" required>
  <label><input type="checkbox" name="autoScroll" %%AUTOSCROLL_CHECKED%%> Auto-scroll</label>
  <label for="scrollSpeed">Scroll speed (px/sec)</label>
  <input type="number" id="scrollSpeed" name="scrollSpeed" min="1" value="%%SCROLL_SPEED%%" required>
  <label for="scrollSequence">Scroll sequence</label>
  <input type="text" id="scrollSequence" name="scrollSequence" value="%%SCROLL_SEQUENCE%%" placeholder="0-500,1200-1800">
  <p class="hint">Comma-separated start-end pixel ranges. Leave empty to scroll the whole page.</p>
  <button type="submit">Save</button>
</form>
<div class="panel">
  <p>Last reported page height: <strong>%%PAGE_HEIGHT%%</strong> px</p>
  <p>Connected viewers: <strong>%%VIEWERS%%</strong></p>
  <p class="hint">Proxy process: %%PROCESS_STATS%%</p>
  <form class="inline" method="POST" action="/reset"><button type="submit">Reset to defaults</button></form>
  <form class="inline" method="POST" action="/clear-cookies"><button type="submit">Clear saved cookies</button></form>
</div>
</body>
</html>
'''

_MARKER = re.compile(r"%%[A-Z_]+%%")

ERROR_TEMPLATE = '''<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>%%TITLE%%</title></head>
<body>
<h1>%%TITLE%%</h1>
<p>%%MESSAGE%%</p>
%%LINK%%
</body>
</html>
'''


def process_stats():
    """CPU and resident memory of the proxy process, for the status panel"""
    proc = psutil.Process(os.getpid())
    rss_mb = proc.memory_info().rss / 1024 / 1024
    return f'CPU {proc.cpu_percent(interval=None):.0f}%, RAM {rss_mb:.0f} MB'


def _format_number(value):
    return repr(value) if isinstance(value, float) else str(value)


def render_config_page(config, last_height='N/A', saved=False, viewers=0):
    e = html.escape
    replacements = {
        '%%TARGET_URL%%': e(config.target_url),
        '%%SCALE_FACTOR%%': e(_format_number(config.scale_factor)),
        '%%SCROLL_SPEED%%': e(str(config.scroll_speed)),
        '%%SCROLL_SEQUENCE%%': e(config.scroll_sequence or ''),
        '%%AUTOSCROLL_CHECKED%%': 'checked' if config.auto_scroll else '',
        '%%PAGE_HEIGHT%%': e(str(last_height)),
        '%%VIEWERS%%': str(viewers),
        '%%PROCESS_STATS%%': e(process_stats()),
        '%%SUCCESS_CLASS%%': 'success' if saved else '',
    }
    return _MARKER.sub(lambda m: replacements.get(m.group(0), m.group(0)), CONFIG_TEMPLATE)


def render_error_page(title, message, link_to_config=False):
    link = '<p><a href="/config">Go to settings</a></p>' if link_to_config else ''
    return (ERROR_TEMPLATE
            .replace('%%TITLE%%', html.escape(title))
            .replace('%%MESSAGE%%', html.escape(message))
            .replace('%%LINK%%', link))
