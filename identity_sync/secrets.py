"""
Secret indirection for configuration values.

Secret-bearing configuration fields may hold a marker of the form
``[vault]FieldName:SecretIdentifier`` instead of the secret itself. The marker
is resolved once, at configuration load time, through a resolver chosen in
the ``secrets`` configuration block.
"""

import os
import re
import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

VAULT_MARKER_PREFIX = '[vault]'


class SecretResolutionError(Exception):
    """Raised when a vault marker cannot be resolved to a secret value."""
    pass


def parse_vault_marker(value: Any) -> Optional[Tuple[str, str]]:
    """
    Parse a vault marker.

    Args:
        value: Raw configuration value

    Returns:
        (field_name, secret_identifier) if value is a marker, None otherwise

    Raises:
        SecretResolutionError: If value starts with the prefix but is malformed
    """
    if not isinstance(value, str) or not value.startswith(VAULT_MARKER_PREFIX):
        return None

    body = value[len(VAULT_MARKER_PREFIX):]
    field_name, sep, secret_id = body.partition(':')
    if not sep or not field_name.strip() or not secret_id.strip():
        raise SecretResolutionError(
            f"Malformed vault marker '{value}', expected [vault]FieldName:SecretIdentifier")
    return field_name.strip(), secret_id.strip()


class SecretResolver:
    """Base class for secret resolvers."""

    def fetch(self, secret_id: str) -> str:
        raise NotImplementedError

    def resolve(self, value: Any) -> Any:
        """
        Return value unchanged unless it is a vault marker, in which case the
        referenced secret is fetched.
        """
        marker = parse_vault_marker(value)
        if marker is None:
            return value

        field_name, secret_id = marker
        secret = self.fetch(secret_id)
        if not secret:
            raise SecretResolutionError(
                f"Secret '{secret_id}' for field {field_name} resolved to an empty value")
        logger.debug(f"Resolved vault secret for field {field_name}")
        return secret


class EnvironmentSecretResolver(SecretResolver):
    """
    Resolve secrets from environment variables.

    The variable name is the secret identifier upper-cased with every
    character outside [A-Z0-9] replaced by an underscore, optionally prefixed.
    """

    def __init__(self, prefix: str = ''):
        self.prefix = prefix

    def variable_name(self, secret_id: str) -> str:
        return self.prefix + re.sub(r'[^A-Z0-9]', '_', secret_id.upper())

    def fetch(self, secret_id: str) -> str:
        name = self.variable_name(secret_id)
        value = os.getenv(name)
        if value is None:
            raise SecretResolutionError(f"Environment variable {name} not set for secret '{secret_id}'")
        return value


class FileSecretResolver(SecretResolver):
    """Resolve secrets from one file per secret (e.g. mounted container secrets)."""

    def __init__(self, secrets_dir: str):
        self.secrets_dir = secrets_dir

    def fetch(self, secret_id: str) -> str:
        # Identifiers are file names, never paths
        if os.sep in secret_id or (os.altsep and os.altsep in secret_id) or secret_id in ('.', '..'):
            raise SecretResolutionError(f"Invalid secret identifier '{secret_id}'")

        path = os.path.join(self.secrets_dir, secret_id)
        try:
            with open(path, 'r') as f:
                return f.read().strip()
        except OSError as e:
            raise SecretResolutionError(f"Cannot read secret '{secret_id}' from {path}: {e}")


def create_resolver(config: Dict[str, Any]) -> SecretResolver:
    """
    Build the resolver named in the ``secrets`` configuration block.

    Args:
        config: Secrets configuration (resolver, env_prefix, secrets_dir)

    Returns:
        SecretResolver instance
    """
    config = config or {}
    kind = config.get('resolver', 'env').lower()

    if kind == 'env':
        return EnvironmentSecretResolver(config.get('env_prefix', ''))
    elif kind == 'file':
        return FileSecretResolver(config.get('secrets_dir', '/run/secrets'))

    raise SecretResolutionError(f"Unknown secret resolver '{kind}'")
