"""Secret retrieval for encryption keys and server credentials.

Secrets come from the environment (or a provider implementing the same
interface), never from configuration files, and are wrapped so they cannot
leak into logs or error messages.

HIPAA 164.312(a)(2)(iv) - Encryption and Decryption
"""

import logging
import os
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

ENCRYPTION_SECRET_ENV = "HEALTHMINT_ENCRYPTION_SECRET"
INSTALLATION_SEED_ENV = "HEALTHMINT_INSTALLATION_SEED"


class MaskedSecret:
    """Wrapper that prevents accidental exposure of secret values."""

    def __init__(self, value: str):
        self._value = value

    def get_value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "***MASKED***"

    def __repr__(self) -> str:
        return "MaskedSecret(***)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MaskedSecret):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


class SecretProvider(ABC):
    """Abstract base class for secrets backends."""

    @abstractmethod
    def get_secret(self, key: str) -> str | None:
        """Retrieve a secret value by key.

        Args:
            key: The secret key/name to retrieve.

        Returns:
            The secret value, or None if not found.
        """

    def get_secret_masked(self, key: str) -> MaskedSecret | None:
        value = self.get_secret(key)
        if value is not None:
            return MaskedSecret(value)
        return None


class EnvSecretProvider(SecretProvider):
    """Retrieve secrets from environment variables."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def get_secret(self, key: str) -> str | None:
        full_key = f"{self.prefix}{key}" if self.prefix else key
        value = os.environ.get(full_key)
        if value is not None:
            logger.debug("Secret loaded from environment variable: %s", full_key)
        return value


def get_default_provider() -> SecretProvider:
    return EnvSecretProvider()


def get_server_secret(
    provider: SecretProvider | None = None,
    env_var: str = ENCRYPTION_SECRET_ENV,
) -> MaskedSecret | None:
    """Get the server-side static secret used for key derivation outside a session."""
    if provider is None:
        provider = get_default_provider()

    secret = provider.get_secret_masked(env_var)
    if secret is None:
        logger.debug("No server encryption secret in %s", env_var)
    return secret


def get_installation_seed(
    provider: SecretProvider | None = None,
    default: str = "",
) -> str:
    """Get the installation-specific seed mixed into derived keys."""
    if provider is None:
        provider = get_default_provider()
    return provider.get_secret(INSTALLATION_SEED_ENV) or default
