"""
Configuration loading and management for Group Membership Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SERVICE_TYPES = ('rest', 'ldap')
RECONCILE_STRATEGIES = ('full_sweep', 'diff')
ID_LIST_FIELDS = ('user_ids', 'group_ids', 'delete_protected_user_ids', 'delete_protected_group_ids')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'service.auth.password': 'SERVICE_PASSWORD',
        'service.auth.token': 'SERVICE_TOKEN',
        'service.auth.client_secret': 'SERVICE_CLIENT_SECRET',
        'service.bind_password': 'LDAP_BIND_PASSWORD',
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
            raise ConfigurationError("Configuration file must contain a mapping")

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
        """Validate required configuration fields, collecting every problem."""
        errors = []

        service = self.config.get('service') or {}
        service_type = str(service.get('type', 'rest')).lower()
        if service_type not in SERVICE_TYPES and not service.get('module'):
            errors.append(f"Unknown service type '{service_type}', expected one of {SERVICE_TYPES}")

        if service_type == 'rest':
            if not service.get('base_url'):
                errors.append("Missing required service field: base_url")
            auth = service.get('auth') or {}
            if auth and not auth.get('method'):
                errors.append("Missing auth method for service")
        elif service_type == 'ldap':
            for field in ('server_url', 'bind_dn', 'bind_password', 'user_base_dn', 'group_base_dn'):
                if not service.get(field):
                    errors.append(f"Missing required LDAP field: {field}")

        strategy = (self.config.get('reconcile') or {}).get('strategy', 'full_sweep')
        if strategy not in RECONCILE_STRATEGIES:
            errors.append(f"Unknown reconcile strategy '{strategy}', expected one of {RECONCILE_STRATEGIES}")

        memberships = self.config.get('memberships')
        if memberships is None:
            memberships = []
        if not isinstance(memberships, list):
            errors.append("memberships must be a list")
            memberships = []

        seen = set()
        for i, membership in enumerate(memberships):
            prefix = f"memberships[{i}]"
            if not isinstance(membership, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            group_id = membership.get('target_group_id')
            if group_id is None or str(group_id) == '':
                errors.append(f"Missing target_group_id for {prefix}")
            elif str(group_id) in seen:
                errors.append(f"Duplicate target_group_id '{group_id}' in {prefix}")
            else:
                seen.add(str(group_id))

            for field in ID_LIST_FIELDS:
                value = membership.get(field)
                if value is not None and not isinstance(value, list):
                    errors.append(f"{prefix}.{field} must be a list of ids")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        service = self.config['service'] = self.config.get('service') or {}
        service_defaults = {
            'type': 'rest',
            'verify_ssl': True,
            'timeout': 30,
            'page_size': 500,
            'max_pages': 100,
        }
        for key, value in service_defaults.items():
            service.setdefault(key, value)
        service['type'] = str(service['type']).lower()
        if service['type'] == 'ldap':
            service.setdefault('user_id_attribute', 'uid')
            service.setdefault('group_id_attribute', 'cn')
            service.setdefault('member_attribute', 'member')

        self.config['memberships'] = self.config.get('memberships') or []
        for membership in self.config['memberships']:
            membership['target_group_id'] = str(membership['target_group_id'])
            for field in ID_LIST_FIELDS:
                membership[field] = [str(value) for value in (membership.get(field) or [])]

        reconcile_config = self.config['reconcile'] = self.config.get('reconcile') or {}
        reconcile_config.setdefault('strategy', 'full_sweep')

        self.config.setdefault('state_file', 'membership_state.json')

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config['logging'] = self.config.get('logging') or {}
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 1.0
        }
        error_config = self.config['error_handling'] = self.config.get('error_handling') or {}
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


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
