"""
Configuration loading and management for Identity Sync.

This module handles loading configuration from YAML files and environment
variables, resolving vault markers in secret-bearing fields, with validation
and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from identity_sync.secrets import create_resolver, SecretResolutionError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


DEFAULT_CONTENT_SHARE_TAG = 'content_share'


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'identity_provider.auth.client_secret': 'IDP_CLIENT_SECRET',
        'roster.auth.password': 'ROSTER_PASSWORD',
        'content_share.auth.password': 'CONTENT_SHARE_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    # Fields that may carry a [vault] marker. Business app passwords are
    # declared separately because the apps are a list.
    SECRET_FIELDS = [
        'identity_provider.auth.client_secret',
        'roster.auth.password',
        'content_share.auth.password',
        'notifications.smtp_password',
    ]
    BUSINESS_APP_SECRET_FIELDS = ['auth.password']

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
        Load configuration from file, apply environment overrides and resolve secrets.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found, a secret cannot be
                resolved, or validation fails
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
        self._resolve_secrets()
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

        for i, app in enumerate(self.config.get('business_apps') or []):
            app_name = app.get('name', f'app_{i}')
            env_var = f"{app_name.upper()}_PASSWORD"
            env_value = os.getenv(env_var)
            if env_value:
                app.setdefault('auth', {})['password'] = env_value
                logger.debug(f"Applied environment override for {app_name} password")

    def _resolve_secrets(self):
        """Resolve vault markers in the declared secret-bearing fields."""
        try:
            resolver = create_resolver(self.config.get('secrets', {}))

            for key_path in self.SECRET_FIELDS:
                self._resolve_field(resolver, self.config, key_path)

            for app in self.config.get('business_apps') or []:
                for key_path in self.BUSINESS_APP_SECRET_FIELDS:
                    self._resolve_field(resolver, app, key_path)
        except SecretResolutionError as e:
            raise ConfigurationError(f"Secret resolution failed: {e}")

    def _resolve_field(self, resolver, config: Dict, key_path: str):
        value = self._get_nested_value(config, key_path)
        if value is not None:
            resolved = resolver.resolve(value)
            if resolved is not value:
                self._set_nested_value(config, key_path, resolved)

    def _get_nested_value(self, config: Dict, key_path: str) -> Any:
        """Get a nested configuration value using dot notation."""
        current = config
        for key in key_path.split('.'):
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current

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

        roster = self.config.get('roster') or {}
        if not roster.get('endpoint_url'):
            errors.append("Missing required roster field: endpoint_url")

        idp = self.config.get('identity_provider') or {}
        for field in ['base_url', 'create_user_payload', 'add_user_to_group_payload']:
            if not idp.get(field):
                errors.append(f"Missing required identity_provider field: {field}")
        idp_auth = idp.get('auth') or {}
        for field in ['client_id', 'client_secret']:
            if not idp_auth.get(field):
                errors.append(f"Missing required identity_provider.auth field: {field}")
        if not idp.get('user_groups') and not idp.get('manager_groups'):
            errors.append("At least one of identity_provider.user_groups or manager_groups must be configured")

        apps = self.config.get('business_apps') or []
        names = []
        for i, app in enumerate(apps):
            prefix = f"business_apps[{i}]"
            for field in ['name', 'endpoint', 'create_user_payload', 'update_user_payload',
                          'user_role_code', 'manager_role_code']:
                if not app.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")
            auth = app.get('auth') or {}
            if not auth.get('username') or not auth.get('password'):
                errors.append(f"Missing basic auth credentials for {prefix}")
            names.append(app.get('name'))

        duplicates = {name for name in names if name and names.count(name) > 1}
        if duplicates:
            errors.append(f"Duplicate business app names: {', '.join(sorted(duplicates))}")

        share = self.config.get('content_share')
        if share:
            for field in ['base_url', 'folder_id', 'add_user_payload', 'remove_user_payload']:
                if not share.get(field):
                    errors.append(f"Missing required content_share field: {field}")
            auth = share.get('auth') or {}
            if not auth.get('username') or not auth.get('password'):
                errors.append("Missing basic auth credentials for content_share")

        clean = self.config.get('clean') or {}
        source_app = clean.get('source_app')
        if source_app and source_app not in names:
            errors.append(f"clean.source_app '{source_app}' is not a configured business app")

        interval = idp.get('token_refresh_interval')
        if interval is not None and (not isinstance(interval, int) or interval < 1):
            errors.append("identity_provider.token_refresh_interval must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        self.config.setdefault('organization', {})
        self.config.setdefault('business_apps', [])

        roster = self.config['roster']
        roster.setdefault('verify_ssl', True)
        roster.setdefault('timeout', 60)
        roster['auth'] = roster.get('auth') or {}
        if roster['auth'].get('username') or roster['auth'].get('password'):
            roster['auth'].setdefault('method', 'basic')

        idp = self.config['identity_provider']
        idp_defaults = {
            'name': 'identity_provider',
            'scope': 'urn:opc:idm:__myscopes__',
            'user_groups': '',
            'manager_groups': '',
            'token_refresh_interval': 100,
            'remove_user_from_group_payload': (
                '{"schemas": ["urn:ietf:params:scim:api:messages:2.0:PatchOp"], '
                '"Operations": [{"op": "remove", "path": "members[value eq \\"%USERID%\\"]"}]}'
            ),
            'verify_ssl': True,
        }
        for key, value in idp_defaults.items():
            idp.setdefault(key, value)
        idp['auth'].setdefault('method', 'oauth2')

        for app in self.config['business_apps']:
            app.setdefault('verify_ssl', True)
            app.setdefault('page_size', 500)
            app['auth'].setdefault('method', 'basic')

        share = self.config.get('content_share')
        if share:
            share.setdefault('name', DEFAULT_CONTENT_SHARE_TAG)
            share.setdefault('integration_app', 'ecal')
            share.setdefault('verify_ssl', True)
            share['auth'].setdefault('method', 'basic')

        # Roster entries without explicit memberships get every configured system
        default_memberships = [app['name'] for app in self.config['business_apps']]
        if share:
            default_memberships.append(share['name'])
        defaults = self.config.setdefault('defaults', {})
        defaults.setdefault('application_memberships', default_memberships)

        clean = self.config.setdefault('clean', {})
        clean.setdefault('excluded_patterns', ['cto-test*'])
        if self.config['business_apps']:
            clean.setdefault('source_app', self.config['business_apps'][0]['name'])

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        run_config = self.config.setdefault('run', {})
        run_config.setdefault('max_runtime_seconds', 0)

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
