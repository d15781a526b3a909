#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, validation, defaults and environment variable overrides.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dhis2_user_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'dhis2': {
                'base_url': 'https://dhis2.example.org/api',
                'auth': {
                    'method': 'token',
                    'token': 'd2pat_abc123'
                },
            },
            'sync': {
                'batch_size': 5
            },
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'logs'
            }
        }
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)

    def _write_config(self, config):
        path = os.path.join(self.temp_dir.name, 'config.yaml')
        with open(path, 'w') as f:
            yaml.dump(config, f)
        return path

    @patch.dict(os.environ, {}, clear=True)
    def test_load_valid_config_applies_defaults(self):
        config = load_config(self._write_config(self.valid_config))

        self.assertEqual(config['sync']['batch_size'], 5)
        self.assertEqual(config['sync']['minimal_role_id'], 'oO6BBApzmHZ')
        self.assertEqual(config['dhis2']['timeout_seconds'], 30)
        self.assertEqual(config['dhis2']['delete_timeout_seconds'], 60)
        self.assertEqual(config['error_handling']['max_attempts'], 3)
        self.assertEqual(config['monitor']['ping_path'], '/system/ping')
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(os.path.join(self.temp_dir.name, 'missing.yaml')).load()

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir.name, 'bad.yaml')
        with open(path, 'w') as f:
            f.write("dhis2: [unclosed")
        with self.assertRaises(ConfigurationError):
            load_config(path)

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_base_url(self):
        del self.valid_config['dhis2']['base_url']
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))
        self.assertIn('dhis2.base_url', str(ctx.exception))

    @patch.dict(os.environ, {}, clear=True)
    def test_token_method_requires_token(self):
        del self.valid_config['dhis2']['auth']['token']
        with self.assertRaises(ConfigurationError):
            load_config(self._write_config(self.valid_config))

    @patch.dict(os.environ, {}, clear=True)
    def test_basic_auth(self):
        self.valid_config['dhis2']['auth'] = {'method': 'basic', 'username': 'admin'}
        with self.assertRaises(ConfigurationError):
            load_config(self._write_config(self.valid_config))

        self.valid_config['dhis2']['auth']['password'] = 'district'
        config = load_config(self._write_config(self.valid_config))
        self.assertEqual(config['dhis2']['auth']['method'], 'basic')

    @patch.dict(os.environ, {}, clear=True)
    def test_unsupported_batch_size(self):
        self.valid_config['sync']['batch_size'] = 3
        with self.assertRaises(ConfigurationError):
            load_config(self._write_config(self.valid_config))

    @patch.dict(os.environ, {}, clear=True)
    def test_non_positive_timeout(self):
        self.valid_config['dhis2']['timeout_seconds'] = 0
        with self.assertRaises(ConfigurationError):
            load_config(self._write_config(self.valid_config))

    @patch.dict(os.environ, {'DHIS2_API_TOKEN': 'from-env', 'DHIS2_BASE_URL': 'http://localhost:8080/api'},
                clear=True)
    def test_environment_overrides(self):
        del self.valid_config['dhis2']['auth']['token']
        config = load_config(self._write_config(self.valid_config))

        self.assertEqual(config['dhis2']['auth']['token'], 'from-env')
        self.assertEqual(config['dhis2']['base_url'], 'http://localhost:8080/api')

    def test_config_path_from_environment(self):
        path = self._write_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}, clear=True):
            self.assertEqual(ConfigLoader().config_path, path)


if __name__ == '__main__':
    unittest.main()
