"""
Configuration loading and management for LDAP Import.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.  Computed mapping values written as
``{function: "package.module:callable"}`` are resolved to the callable here.
"""

import os
import yaml
import logging
import importlib
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'target.auth.password': 'TARGET_PASSWORD',
        'target.auth.token': 'TARGET_TOKEN',
    }

    MAPPING_KEYS = ('mapping', 'group_mapping')

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
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        self._resolve_mappings()

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

        ldap_config = self.config.get('ldap')
        if not isinstance(ldap_config, dict):
            errors.append("Missing ldap section")
            ldap_config = {}
        if not ldap_config.get('host'):
            errors.append("Missing required LDAP field: host")

        for key in self.MAPPING_KEYS:
            mapping = ldap_config.get(key)
            if mapping is not None and not isinstance(mapping, dict):
                errors.append(f"ldap.{key} must be a mapping of field names to attributes")

        if ldap_config.get('size_limit') is not None:
            size_limit = ldap_config['size_limit']
            if not isinstance(size_limit, int) or isinstance(size_limit, bool) or size_limit < 0:
                errors.append("ldap.size_limit must be a non-negative integer")

        target_config = self.config.get('target')
        if not isinstance(target_config, dict):
            errors.append("Missing target section")
            target_config = {}
        for field in ('module', 'base_url'):
            if not target_config.get(field):
                errors.append(f"Missing required target field: {field}")

        auth = target_config.get('auth')
        if auth is not None and not isinstance(auth, dict):
            errors.append("target.auth must be a mapping")

        import_config = self.config.get('import')
        if import_config is not None and not isinstance(import_config, dict):
            errors.append("import must be a mapping")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'bind_dn': '',
            'bind_password': '',
            'base': '',
            'filter': '(objectClass=person)',
            'mapping': {},
            'group_base': None,
            'group_filter': None,
            'group_mapping': {},
            'size_limit': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 30,
            'receive_timeout': 30,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        # Import behavior defaults
        import_defaults = {
            'create_privileged': False,
            'update_users': False,
            'update_only': False,
            'group_name': 'Imported from LDAP',
            'skip_autogenerated_group': False,
            'clobber_empty': True,
        }
        import_config = self.config.setdefault('import', {})
        for key, value in import_defaults.items():
            import_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Target defaults
        target_config = self.config.setdefault('target', {})
        target_config.setdefault('verify_ssl', True)
        target_config.setdefault('group_id_field', 'LDAPImport gid')
        target_config.setdefault('auth', {})

    def _resolve_mappings(self):
        """Replace computed mapping references with the callables they name."""
        ldap_config = self.config['ldap']
        for key in self.MAPPING_KEYS:
            mapping = ldap_config.get(key) or {}
            for field, value in mapping.items():
                if isinstance(value, list):
                    mapping[field] = [self._resolve_value(f"ldap.{key}.{field}", item) for item in value]
                else:
                    mapping[field] = self._resolve_value(f"ldap.{key}.{field}", value)

    def _resolve_value(self, location: str, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        if set(value) != {'function'}:
            raise ConfigurationError(f"{location}: a computed mapping needs exactly one 'function' key")
        return resolve_callable(value['function'], location)


def resolve_callable(reference: str, location: str = 'mapping') -> Any:
    """
    Import the callable named by a ``module:attribute`` reference.

    Raises:
        ConfigurationError: If the reference is malformed or cannot be imported
    """
    if not isinstance(reference, str) or ':' not in reference:
        raise ConfigurationError(f"{location}: function reference must look like 'module:callable', got {reference!r}")

    module_name, _, attribute = reference.partition(':')
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"{location}: cannot import {module_name}: {e}")

    func = module
    for part in attribute.split('.'):
        func = getattr(func, part, None)
        if func is None:
            raise ConfigurationError(f"{location}: {module_name} has no attribute {attribute}")
    if not callable(func):
        raise ConfigurationError(f"{location}: {reference} is not callable")
    return func


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
