"""
Configuration loading and management for PG LDAP Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/opt/pg-ldap-sync/config.yml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_dn': 'LDAP_BIND_DN',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CFG_PATH env var or
                the default install location
        """
        self.config_path = os.path.abspath(
            config_path or os.getenv('CFG_PATH', DEFAULT_CONFIG_PATH)
        )
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
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file is empty or not a mapping: {self.config_path}")

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

        # One database password for every configured database
        pg_password = os.getenv('PG_PASSWORD')
        if pg_password:
            for database in self.config.get('databases') or []:
                database.setdefault('postgres', {})['password'] = pg_password
            logger.debug("Applied environment override for postgres passwords")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Validate LDAP configuration
        ldap_config = self.config.get('ldap') or {}
        required_ldap_fields = ['server_url', 'bind_dn', 'bind_password', 'group_search_base']
        for field in required_ldap_fields:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        # Validate sync policy
        policy = self.config.get('sync_policy') or {}
        if not policy.get('default_postgres_group'):
            errors.append("Missing required sync_policy field: default_postgres_group")
        prefixes = policy.get('allowed_user_prefixes')
        if prefixes is not None and not isinstance(prefixes, list):
            errors.append("sync_policy.allowed_user_prefixes must be a list")
        elif not prefixes:
            logger.warning("sync_policy.allowed_user_prefixes is empty: "
                           "membership sync and deprovisioning will be skipped")

        # Validate databases
        databases = self.config.get('databases') or []
        if not databases:
            errors.append("At least one database must be configured")

        aliases = set()
        for i, database in enumerate(databases):
            db_prefix = f"databases[{i}]"
            alias = database.get('alias')
            if not alias:
                errors.append(f"Missing required field {db_prefix}.alias")
            elif alias in aliases:
                errors.append(f"Duplicate database alias '{alias}' at {db_prefix}")
            else:
                aliases.add(alias)

            postgres = database.get('postgres') or {}
            for field in ['host', 'dbname', 'user']:
                if not postgres.get(field):
                    errors.append(f"Missing required field {db_prefix}.postgres.{field}")

            roles = database.get('roles') or []
            if not roles:
                errors.append(f"No roles configured for {db_prefix}")

            for j, role in enumerate(roles):
                role_prefix = f"{db_prefix}.roles[{j}]"
                if not role.get('ldap_group_cn'):
                    errors.append(f"Missing ldap_group_cn for {role_prefix}")
                if not role.get('postgres_role'):
                    errors.append(f"Missing postgres_role for {role_prefix}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'group_object_class': 'groupOfNames',
            'group_name_attribute': 'cn',
            'group_object_classes': ['group', 'groupOfNames'],
            'member_attribute': 'member',
            'user_id_attribute': 'uid',
            'connect_attempts': 1,
            'connection_timeout': 10,
            'receive_timeout': 30,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        self.config['sync_policy'].setdefault('allowed_user_prefixes', [])
        if self.config['sync_policy']['allowed_user_prefixes'] is None:
            self.config['sync_policy']['allowed_user_prefixes'] = []

        # Postgres defaults
        postgres_defaults = {
            'port': 5432,
            'sslmode': 'prefer',
            'connect_timeout': 10,
            'pool_max_connections': 2,
        }
        for database in self.config['databases']:
            postgres = database['postgres']
            for key, value in postgres_defaults.items():
                postgres.setdefault(key, value)

        # Phase timeout defaults (seconds)
        timeout_defaults = {
            'provisioning': 60,
            'membership_sync': 30,
            'deprovisioning': 30,
        }
        timeouts_config = self.config.setdefault('timeouts', {})
        for key, value in timeout_defaults.items():
            timeouts_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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
