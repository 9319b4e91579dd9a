"""Manifest document schema and the immutable ManifestVersion record.

A manifest declares the desired state of one agent instance. The document
is stored as plain JSON inside a ManifestVersion; ``Manifest`` is the typed
view used by the policy engine and the reconciliation engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

API_VERSION = "fleetplane/v1"
MANIFEST_KIND = "AgentInstance"

NAME_PATTERN = r"^[a-z0-9]+(-[a-z0-9]+)*$"


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class SecretProvider(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    LOCAL = "local"
    ENV = "env"


class ChannelType(str, Enum):
    SLACK = "slack"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"
    DISCORD = "discord"


class InboundMode(str, Enum):
    NONE = "NONE"
    WEBHOOK = "WEBHOOK"
    PUBLIC = "PUBLIC"


class EgressPreset(str, Enum):
    NONE = "NONE"
    RESTRICTED = "RESTRICTED"
    DEFAULT = "DEFAULT"


# ---------------------------------------------------------------------------
# Document sections
# ---------------------------------------------------------------------------


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ManifestMetadata(_Section):
    name: str = Field(min_length=1, max_length=63, pattern=NAME_PATTERN)
    workspace: str = Field(min_length=1)
    environment: Environment = Environment.DEV
    labels: dict[str, str] = Field(default_factory=dict)


class RuntimeSpec(_Section):
    image: str = Field(min_length=1)
    cpu: float = Field(default=1.0, ge=0.25, le=16)
    memory_mib: int = Field(default=2048, ge=512, le=65536)
    replicas: int = Field(default=1, ge=1, le=10)
    command: list[str] | None = None


class SecretRef(_Section):
    name: str = Field(min_length=1)
    provider: SecretProvider
    key: str = Field(min_length=1)


class ChannelSpec(_Section):
    type: ChannelType
    enabled: bool = True
    secret_ref: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class SkillsSpec(_Section):
    mode: Literal["ALLOWLIST"] = "ALLOWLIST"
    allowlist: list[str] = Field(default_factory=list)


class NetworkSpec(_Section):
    inbound: InboundMode = InboundMode.NONE
    egress_preset: EgressPreset = EgressPreset.RESTRICTED


class ObservabilitySpec(_Section):
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    tracing: bool = False


class PoliciesSpec(_Section):
    forbid_public_admin: bool = True
    require_secret_manager: bool = True


class ManifestSpec(_Section):
    runtime: RuntimeSpec
    secrets: list[SecretRef] = Field(default_factory=list)
    channels: list[ChannelSpec] = Field(default_factory=list)
    skills: SkillsSpec = Field(default_factory=SkillsSpec)
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    observability: ObservabilitySpec = Field(default_factory=ObservabilitySpec)
    policies: PoliciesSpec = Field(default_factory=PoliciesSpec)
    tier: str = "standard"
    sandbox: bool = False
    agent_config: dict[str, Any] = Field(default_factory=dict)


class Manifest(_Section):
    """Typed view of a manifest document."""

    api_version: Literal["fleetplane/v1"] = API_VERSION
    kind: Literal["AgentInstance"] = MANIFEST_KIND
    metadata: ManifestMetadata
    spec: ManifestSpec


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------


class ManifestVersion(BaseModel):
    """Immutable, append-only record of declared intent for one instance.

    Versions for an instance form the contiguous sequence 1, 2, 3, ...
    A version is written exactly once and never updated or deleted while
    its instance exists.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"mfv-{uuid.uuid4().hex[:12]}")
    instance_id: str
    version: int = Field(ge=1)
    content: dict[str, Any]
    description: str | None = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def document(self) -> Manifest:
        """Parse the stored content into a typed ``Manifest``."""
        return Manifest.model_validate(self.content)
