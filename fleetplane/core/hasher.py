"""Canonical hashing helpers for configuration fingerprints.

The control plane and the agent gateway must agree on the fingerprint of
an effective configuration, so both sides hash the same canonical JSON
form: sorted keys, compact separators, ASCII only.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def config_fingerprint(config: dict[str, Any]) -> str:
    """SHA-256 of the canonical form of an effective configuration.

    Key order never affects the result, so a configuration reported back
    by a gateway in a different order still matches.
    """
    return sha256_hex(canonical_json_bytes(config))


def config_diff(desired: dict[str, Any], live: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Structured, shallow-to-deep diff of two configuration documents.

    Returns a mapping of dotted paths to ``{"desired": ..., "live": ...}``.
    Only used for observability; drift itself is decided by fingerprint.
    """
    diff: dict[str, Any] = {}
    for key in sorted(set(desired) | set(live)):
        path = f"{prefix}{key}"
        left = desired.get(key)
        right = live.get(key)
        if isinstance(left, dict) and isinstance(right, dict):
            diff.update(config_diff(left, right, prefix=f"{path}."))
        elif left != right:
            diff[path] = {"desired": left, "live": right}
    return diff
