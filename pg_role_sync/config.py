"""
Configuration loading and management for pg_role_sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. Command-line flags are applied on top by the
orchestrator.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

MISSING_CREDENTIAL_POLICIES = ('fail', 'ignore')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
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
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        postgres_config = self.config.get('postgres') or {}
        port = postgres_config.get('port')
        if port is not None:
            try:
                int(port)
            except (TypeError, ValueError):
                errors.append(f"Invalid postgres.port: {port}")

        policy = postgres_config.get('on_missing_credentials')
        if policy is not None and policy not in MISSING_CREDENTIAL_POLICIES:
            errors.append(f"postgres.on_missing_credentials must be one of "
                          f"{', '.join(MISSING_CREDENTIAL_POLICIES)}, got: {policy}")

        sync_config = self.config.get('sync') or {}
        for field in ['managed_comment', 'sync_group_comment']:
            if field in sync_config and not sync_config[field]:
                errors.append(f"sync.{field} must not be empty")
        if (sync_config.get('managed_comment') and
                sync_config.get('managed_comment') == sync_config.get('sync_group_comment')):
            errors.append("sync.managed_comment and sync.sync_group_comment must differ")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'group_base_dn': '',
            'group_filter': '(objectClass=group)',
            'account_attribute': 'sAMAccountName',
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        postgres_defaults = {
            'host': 'localhost',
            'port': 5432,
            'database': 'postgres',
            'user': 'postgres',
            'password': None,
            'psql_path': 'psql',
            'timeout_seconds': 60,
            'on_missing_credentials': 'fail',
        }
        postgres_config = self._section('postgres')
        for key, value in postgres_defaults.items():
            postgres_config.setdefault(key, value)

        sync_defaults = {
            'managed_comment': 'Managed by pg_role_sync',
            'sync_group_comment': 'pg_role_sync group',
            'admin_user': 'postgres',
            'reserved_prefix': 'template',
            'drop_managed_roles': False,
            'case_insensitive_roles': False,
            'dry_run': False,
        }
        sync_config = self._section('sync')
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        output_config = self._section('output')
        output_config.setdefault('script_dir', '.')

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self._section('error_handling')
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # The LDAP client reads its retry settings from its own section
        ldap_config.setdefault('error_handling', dict(error_config))

    def _section(self, name: str) -> Dict[str, Any]:
        if not isinstance(self.config.get(name), dict):
            self.config[name] = {}
        return self.config[name]


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
