"""
Configuration loading and management for DHIS2 User Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

AUTH_METHODS = ('token', 'bearer', 'basic')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive or deployment-specific fields
    ENV_OVERRIDES = {
        'dhis2.base_url': 'DHIS2_BASE_URL',
        'dhis2.auth.token': 'DHIS2_API_TOKEN',
        'dhis2.auth.password': 'DHIS2_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        dhis2 = self.config.get('dhis2') or {}
        if not dhis2.get('base_url'):
            errors.append("Missing required field dhis2.base_url")
        elif not str(dhis2['base_url']).startswith(('http://', 'https://')):
            errors.append("dhis2.base_url must be an http(s) URL")

        auth = dhis2.get('auth') or {}
        method = str(auth.get('method', '')).lower()
        if not method:
            errors.append("Missing auth method for dhis2.auth")
        elif method not in AUTH_METHODS:
            errors.append(f"Unsupported auth method '{method}' (expected one of {', '.join(AUTH_METHODS)})")
        elif method in ('token', 'bearer') and not auth.get('token'):
            errors.append(f"Auth method '{method}' requires dhis2.auth.token")
        elif method == 'basic' and not (auth.get('username') and auth.get('password')):
            errors.append("Auth method 'basic' requires dhis2.auth.username and dhis2.auth.password")

        truststore_type = str(dhis2.get('truststore_type', 'PEM')).upper()
        if truststore_type not in ('PEM', 'PKCS12'):
            errors.append(f"Unsupported truststore_type '{truststore_type}'")

        batch_size = (self.config.get('sync') or {}).get('batch_size')
        if batch_size is not None and batch_size not in (1, 2, 5, 10):
            errors.append("sync.batch_size must be one of 1, 2, 5, 10")

        for section, key in (('dhis2', 'timeout_seconds'),
                             ('dhis2', 'delete_timeout_seconds'),
                             ('monitor', 'interval_seconds')):
            value = (self.config.get(section) or {}).get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                errors.append(f"{section}.{key} must be a positive number")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'dhis2': {
                'verify_ssl': True,
                'truststore_type': 'PEM',
                'timeout_seconds': 30,
                'delete_timeout_seconds': 60,
            },
            'error_handling': {
                'max_attempts': 3,
                'retry_base_delay': 1.0,
            },
            'monitor': {
                'ping_path': '/system/ping',
                'interval_seconds': 30,
                'failure_threshold': 3,
            },
            'sync': {
                'batch_size': 2,
                'minimal_role_id': 'oO6BBApzmHZ',
                'delete_settle_seconds': 1,
                'export_page_size': 10000,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
            },
        }
        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
