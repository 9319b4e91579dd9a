"""Per-instance secret storage.

``SecretStore`` is the only contract reconciliation depends on. The
bundled ``LocalSecretStore`` keeps values in a JSON file, each value
sealed with a PyNaCl ``SecretBox`` (XSalsa20-Poly1305) under one
symmetric key.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import nacl.encoding
import nacl.secret
import nacl.utils
from nacl.exceptions import CryptoError

logger = logging.getLogger(__name__)

GATEWAY_TOKEN_KEY = "gateway_auth_token"


class SecretStoreError(RuntimeError):
    """Raised when the secret file or key cannot be read or decrypted."""


@runtime_checkable
class SecretStore(Protocol):
    def store(self, instance_id: str, key: str, value: str) -> None:
        ...

    def get(self, instance_id: str, key: str) -> str | None:
        ...

    def delete(self, instance_id: str, key: str) -> None:
        ...


def load_or_create_key(key_path: Path, create: bool = True) -> bytes:
    """Read a hex key from *key_path*, generating one on first use.

    With ``create=False`` a missing key file raises ``SecretStoreError``
    instead; production deployments must provision their key.
    """
    key_path = Path(key_path)
    if key_path.exists():
        key = bytes.fromhex(key_path.read_text(encoding="utf-8").strip())
    elif not create:
        raise SecretStoreError(f"Secret key file {key_path} is missing and key generation is disabled")
    else:
        key = nacl.utils.random(nacl.secret.SecretBox.KEY_SIZE)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_text(key.hex(), encoding="utf-8")
        os.chmod(key_path, 0o600)
        logger.info("Generated new secret store key at %s", key_path)
    if len(key) != nacl.secret.SecretBox.KEY_SIZE:
        raise SecretStoreError(f"Secret key must be {nacl.secret.SecretBox.KEY_SIZE} bytes")
    return key


class LocalSecretStore:
    """Encrypted JSON-file secret store.

    Parameters
    ----------
    path:
        Location of the secrets file. Created on first write.
    key:
        32-byte symmetric key. Defaults to a key file next to *path*.
    create_key:
        Whether a missing key file may be generated.

    Examples
    --------
    >>> store = LocalSecretStore(Path("/tmp/secrets.json"))
    >>> store.store("inst-1", "gateway_auth_token", "s3cret")
    >>> store.get("inst-1", "gateway_auth_token")
    's3cret'
    """

    def __init__(self, path: Path, key: bytes | None = None, create_key: bool = True) -> None:
        self._path = Path(path)
        if key is None:
            key = load_or_create_key(self._path.with_suffix(".key"), create=create_key)
        self._box = nacl.secret.SecretBox(key)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict[str, str]]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SecretStoreError(f"Corrupt secrets file {self._path}: {exc}") from exc

    def _save(self, data: dict[str, dict[str, str]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)

    def store(self, instance_id: str, key: str, value: str) -> None:
        sealed = self._box.encrypt(value.encode("utf-8"), encoder=nacl.encoding.Base64Encoder)
        with self._lock:
            data = self._load()
            data.setdefault(instance_id, {})[key] = sealed.decode("ascii")
            self._save(data)

    def get(self, instance_id: str, key: str) -> str | None:
        with self._lock:
            sealed = self._load().get(instance_id, {}).get(key)
        if sealed is None:
            return None
        try:
            plain = self._box.decrypt(sealed.encode("ascii"), encoder=nacl.encoding.Base64Encoder)
        except CryptoError as exc:
            raise SecretStoreError(f"Cannot decrypt secret {key} for {instance_id}") from exc
        return plain.decode("utf-8")

    def delete(self, instance_id: str, key: str) -> None:
        with self._lock:
            data = self._load()
            secrets = data.get(instance_id)
            if secrets is None or key not in secrets:
                return
            del secrets[key]
            if not secrets:
                del data[instance_id]
            self._save(data)

    def delete_instance(self, instance_id: str) -> None:
        """Remove every secret held for *instance_id*."""
        with self._lock:
            data = self._load()
            if data.pop(instance_id, None) is not None:
                self._save(data)
