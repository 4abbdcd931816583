"""
Configuration loading and management for Roster Tag Sync.

This module loads the YAML configuration file, applies environment variable
overrides for secrets, validates it and fills in defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

ROSTER_SOURCES = ('file', 'ldap')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variables that override secrets in the file
    ENV_OVERRIDES = {
        'directory.api_key': 'MAILCHIMP_API_KEY',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
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
            with open(self.config_path, 'r', encoding='utf-8') as f:
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

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
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
        """Validate required configuration fields, reporting every problem at once."""
        errors = []

        directory = self.config.get('directory') or {}
        if not directory.get('api_key') and not directory.get('auth'):
            errors.append("Missing directory credentials: set directory.api_key or MAILCHIMP_API_KEY")

        syncs = self.config.get('syncs') or []
        if not syncs:
            errors.append("At least one sync job must be configured under 'syncs'")

        names = set()
        needs_ldap = False
        for i, job in enumerate(syncs):
            prefix = f"syncs[{i}]"
            if not isinstance(job, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            for field in ('name', 'list_name', 'tag'):
                if not job.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            name = job.get('name')
            if name in names:
                errors.append(f"Duplicate sync job name '{name}'")
            names.add(name)

            errors.extend(self._validate_roster(prefix, job.get('roster') or {}))
            needs_ldap = needs_ldap or (job.get('roster') or {}).get('source') == 'ldap'

        if needs_ldap:
            ldap_config = self.config.get('ldap') or {}
            for field in ('server_url', 'bind_dn', 'bind_password'):
                if not ldap_config.get(field):
                    errors.append(f"Missing required LDAP field: {field}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_roster(self, prefix: str, roster: Dict[str, Any]) -> List[str]:
        errors = []
        source = roster.get('source')
        if source not in ROSTER_SOURCES:
            errors.append(f"{prefix}.roster.source must be one of: {', '.join(ROSTER_SOURCES)}")
        elif source == 'file' and not roster.get('path'):
            errors.append(f"Missing {prefix}.roster.path")
        elif source == 'ldap':
            if not roster.get('group_dn'):
                errors.append(f"Missing {prefix}.roster.group_dn")
            merge_fields = roster.get('merge_fields', {})
            if not isinstance(merge_fields, dict):
                errors.append(f"{prefix}.roster.merge_fields must map merge field names to LDAP attributes")
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'directory': {
                'module': 'mailchimp',
                'verify_ssl': True,
                'page_size': 1000,
                'timeout_seconds': 30,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
                'console_output': True,
                'console_level': 'INFO',
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
                'retry_backoff': 2.0,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }
        for section, section_defaults in defaults.items():
            section_config = self.config.get(section) or {}
            self.config[section] = section_config
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)

        if 'ldap' in self.config:
            ldap_config = self.config['ldap'] or {}
            self.config['ldap'] = ldap_config
            ldap_config.setdefault('user_base_dn', '')
            ldap_config.setdefault('user_filter', '(objectClass=person)')

        for job in self.config['syncs']:
            if job['roster']['source'] == 'ldap':
                job['roster'].setdefault('merge_fields', {})


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
