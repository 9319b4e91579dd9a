"""Static adapter metadata and the resource references adapters return.

Metadata is read-only reference data: the dispatch layer uses it for
capability negotiation and operator tooling renders it for first-run
setup. None of these models own mutable state.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AdapterStatus(str, Enum):
    READY = "ready"
    BETA = "beta"
    COMING_SOON = "coming_soon"


class AdapterCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    scaling: bool = False
    sandbox: bool = False
    persistent_storage: bool = False
    https_endpoint: bool = False
    log_streaming: bool = False

    def missing(self, required: set[str]) -> list[str]:
        """Return the names in *required* this adapter does not offer."""
        offered = self.model_dump()
        return sorted(name for name in required if not offered.get(name, False))


class CredentialRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    display_name: str
    description: str = ""
    required: bool = True
    sensitive: bool = False
    pattern: str | None = None  # optional validation regex


class TierSpec(BaseModel):
    """Named resource sizing profile offered by an adapter."""

    model_config = ConfigDict(frozen=True)

    tier: str
    cpu: float
    memory_mib: int
    disk_gb: int
    machine_type: str | None = None  # provider-specific size name, where one exists


class AdapterMetadata(BaseModel):
    """Static descriptor for one deployment type."""

    model_config = ConfigDict(frozen=True)

    type: str
    display_name: str
    description: str = ""
    icon: str = ""
    status: AdapterStatus = AdapterStatus.READY
    provisioning_steps: list[str] = Field(default_factory=list)
    capabilities: AdapterCapabilities = Field(default_factory=AdapterCapabilities)
    credentials: list[CredentialRequirement] = Field(default_factory=list)
    tier_specs: list[TierSpec] = Field(default_factory=list)

    def tier(self, name: str) -> TierSpec | None:
        for spec in self.tier_specs:
            if spec.tier == name:
                return spec
        return None


# ---------------------------------------------------------------------------
# Runtime results
# ---------------------------------------------------------------------------


class ResourceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ResourceRef(BaseModel):
    """Identifier of a workload an adapter created or updated."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    id: str
    gateway_host: str | None = None
    gateway_port: int | None = None

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str) -> ResourceRef:
        return cls.model_validate_json(raw)


class ResourceDescription(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ResourceStatus
    outputs: dict[str, Any] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == ResourceStatus.RUNNING
