"""Secret storage interface and the encrypted local store."""

from fleetplane.secrets.store import (
    GATEWAY_TOKEN_KEY,
    LocalSecretStore,
    SecretStore,
    SecretStoreError,
    load_or_create_key,
)

__all__ = [
    "GATEWAY_TOKEN_KEY",
    "LocalSecretStore",
    "SecretStore",
    "SecretStoreError",
    "load_or_create_key",
]
