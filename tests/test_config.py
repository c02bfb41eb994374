"""Tests for configuration management."""

import json
import os
import shutil
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from kantine_device.config import DEFAULT_URL, Config, ConfigError, ConfigValidationError, kantine_home


class TestConfig(unittest.TestCase):
    """Test configuration loading, validation and backups."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.env = patch.dict(os.environ, {}, clear=False)
        self.env.start()
        os.environ.pop("KANTINE_API_URL", None)
        self.config = Config(home=self.temp_dir / "home")

    def tearDown(self):
        self.env.stop()
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        config = self.config.load()
        self.assertEqual(config['url'], DEFAULT_URL)
        self.assertEqual(config['timeout'], 30)
        self.assertEqual(config['reconcile_interval'], 3600)
        self.assertEqual(config['fresh_data_timeout'], 5.0)
        self.assertFalse(self.config.config_file.exists())

    def test_directory_permissions(self):
        self.assertEqual(stat.S_IMODE(self.config.config_dir.stat().st_mode), 0o700)

    def test_set_and_get(self):
        self.config.set('timeout', 60)
        self.assertEqual(self.config.get('timeout'), 60)
        self.assertEqual(stat.S_IMODE(self.config.config_file.stat().st_mode), 0o600)

    def test_invalid_values_rejected(self):
        cases = [
            ('timeout', 1),
            ('timeout', "30"),
            ('url', "ftp://example.com"),
            ('reconcile_interval', 10),
            ('retries', True),
        ]
        for key, value in cases:
            with self.subTest(key=key, value=value):
                with self.assertRaises(ConfigValidationError):
                    self.config.set(key, value)

    def test_unknown_key_rejected(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            self.config.set('colour', 'blue')
        self.assertIn("colour", str(ctx.exception))

    def test_float_field_accepts_int(self):
        self.config.set('fresh_data_timeout', 2)
        self.assertEqual(self.config.get('fresh_data_timeout'), 2)

    def test_api_url_override(self):
        self.config.set('url', 'https://staging.example.com')
        with patch.dict(os.environ, {"KANTINE_API_URL": "http://localhost:8000"}):
            self.assertEqual(self.config.get_url(), "http://localhost:8000")
        self.assertEqual(self.config.get_url(), "https://staging.example.com")

    def test_backup_created_on_change(self):
        self.config.set('timeout', 40)
        self.config.set('timeout', 50)
        self.assertEqual(len(self.config.list_backups()), 1)

    def test_corrupt_config_restored_from_backup(self):
        self.config.set('timeout', 40)
        self.config.set('timeout', 50)
        self.config.config_file.write_text("{broken")

        self.assertEqual(self.config.load()['timeout'], 40)

    def test_corrupt_config_without_backup(self):
        self.config.config_file.write_text("{broken")
        with self.assertRaises(ConfigError):
            self.config.load()
        self.assertEqual(self.config.get('timeout', 99), 99)

    def test_hardware_identifier_is_stable(self):
        first = self.config.get_hardware_identifier()
        self.assertEqual(Config(home=self.config.config_dir).get_hardware_identifier(), first)

    def test_reset_keeps_hardware_identifier(self):
        identifier = self.config.get_hardware_identifier()
        self.config.set('timeout', 90)

        self.config.reset()

        with open(self.config.config_file) as f:
            saved = json.load(f)
        self.assertEqual(saved['timeout'], 30)
        self.assertEqual(saved['hardware_identifier'], identifier)

    def test_validate_configuration_warnings(self):
        self.config.set('reconcile_interval', 120)
        self.config.set('cache_ttl_long', 10)
        results = self.config.validate_configuration()
        self.assertTrue(results['valid'])
        self.assertEqual(len(results['warnings']), 2)

    def test_kantine_home_override(self):
        with patch.dict(os.environ, {"KANTINE_HOME": str(self.temp_dir / "custom")}):
            self.assertEqual(kantine_home(), self.temp_dir / "custom")


if __name__ == '__main__':
    unittest.main()
