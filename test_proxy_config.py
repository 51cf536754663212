import itertools
import json
import os
import tempfile
import unittest

from proxy_config import (
    DEFAULT_CONFIG, ConfigStore, ProxyConfig, config_from_form, parse_scroll_sequence,
)
from proxy_errors import PersistenceError


class TestConfigStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ConfigStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def write_raw(self, text):
        with open(self.store.path, 'w') as f:
            f.write(text)

    def test_missing_file_gives_defaults(self):
        self.assertEqual(self.store.load().to_dict(), DEFAULT_CONFIG)

    def test_empty_and_malformed_files_give_defaults(self):
        for raw in ('', '   \n', '{not json', '[1, 2]', 'null'):
            self.write_raw(raw)
            self.assertEqual(self.store.load().to_dict(), DEFAULT_CONFIG, raw)

    def test_partial_config_merges_every_subset_over_defaults(self):
        stored = {
            'targetUrl': 'https://example.com/a',
            'scaleFactor': 1.5,
            'autoScroll': True,
            'scrollSpeed': 80,
            'scrollSequence': '0-500',
        }
        keys = list(stored)
        for size in range(len(keys) + 1):
            for subset in itertools.combinations(keys, size):
                self.write_raw(json.dumps({k: stored[k] for k in subset}))
                loaded = self.store.load().to_dict()
                self.assertEqual(set(loaded), set(DEFAULT_CONFIG))
                for key in keys:
                    expected = stored[key] if key in subset else DEFAULT_CONFIG[key]
                    self.assertEqual(loaded[key], expected, (subset, key))

    def test_wrongly_typed_values_fall_back(self):
        self.write_raw(json.dumps({'scaleFactor': 'big', 'scrollSpeed': -3, 'autoScroll': 'yes'}))
        config = self.store.load()
        self.assertEqual(config.scale_factor, 1.0)
        self.assertEqual(config.scroll_speed, 50)
        self.assertFalse(config.auto_scroll)

    def test_save_then_load(self):
        config = ProxyConfig(target_url='https://example.com/a', scale_factor=1.5,
                             auto_scroll=True, scroll_speed=30, scroll_sequence='0-500,1200-1800')
        self.store.save(config)
        self.assertEqual(self.store.load(), config)

    def test_reset_writes_defaults(self):
        self.store.save(ProxyConfig(target_url='https://example.com/'))
        self.store.reset()
        self.assertEqual(self.store.load().to_dict(), DEFAULT_CONFIG)

    def test_unwritable_location_raises_persistence_error(self):
        blocker = os.path.join(self.tmp.name, 'not-a-dir')
        with open(blocker, 'w') as f:
            f.write('x')
        store = ConfigStore(blocker)
        with self.assertRaises(PersistenceError):
            store.save(ProxyConfig())


class TestScrollSequence(unittest.TestCase):
    def test_pairs_in_order(self):
        self.assertEqual(parse_scroll_sequence('0-500,1200-1800'), [(0, 500), (1200, 1800)])

    def test_invalid_entries_are_dropped(self):
        self.assertEqual(parse_scroll_sequence('0-500, abc, 10-, 1-2-3, 700 - 900'),
                         [(0, 500), (700, 900)])

    def test_empty(self):
        self.assertEqual(parse_scroll_sequence(''), [])
        self.assertEqual(parse_scroll_sequence(None), [])
        self.assertEqual(parse_scroll_sequence('junk'), [])

    def test_fractional_values(self):
        self.assertEqual(parse_scroll_sequence('0.5-10.25'), [(0.5, 10.25)])


class TestConfigFromForm(unittest.TestCase):
    def form(self, **overrides):
        data = {
            'targetUrl': 'https://example.com/a',
            'scaleFactor': '1.5',
            'scrollSpeed': '50',
            'scrollSequence': '0-500,1200-1800',
        }
        data.update(overrides)
        return data

    def test_valid_form(self):
        config = config_from_form(self.form(autoScroll='on'), 'localhost:1337')
        self.assertEqual(config.target_url, 'https://example.com/a')
        self.assertEqual(config.scale_factor, 1.5)
        self.assertTrue(config.auto_scroll)
        self.assertEqual(config.scroll_speed, 50)
        self.assertEqual(config.scroll_sequence, '0-500,1200-1800')

    def test_unchecked_auto_scroll(self):
        self.assertFalse(config_from_form(self.form()).auto_scroll)

    def test_rejects_bad_values(self):
        bad = [
            {'targetUrl': 'not a url'},
            {'targetUrl': 'ftp://example.com/'},
            {'scaleFactor': 'abc'},
            {'scaleFactor': '0'},
            {'scaleFactor': 'nan'},
            {'scrollSpeed': '1.5'},
            {'scrollSpeed': '0'},
        ]
        for override in bad:
            with self.assertRaises(ValueError, msg=override):
                config_from_form(self.form(**override))

    def test_rejects_proxy_address(self):
        with self.assertRaises(ValueError):
            config_from_form(self.form(targetUrl='http://localhost:1337/'), 'localhost:1337')


if __name__ == '__main__':
    unittest.main()
