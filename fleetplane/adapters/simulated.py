"""In-memory adapter for development, demos and tests.

Keeps deployed workloads in a dict. Failures and health can be injected
to exercise the engine's error paths without real infrastructure.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any

from fleetplane.adapters.base import DeleteOptions
from fleetplane.core.errors import AdapterFailureError
from fleetplane.models.adapters import (
    AdapterCapabilities,
    AdapterMetadata,
    AdapterStatus,
    ResourceDescription,
    ResourceRef,
    ResourceStatus,
    TierSpec,
)
from fleetplane.models.manifests import RuntimeSpec

logger = logging.getLogger(__name__)

SIMULATED_METADATA = AdapterMetadata(
    type="simulated",
    display_name="Simulated",
    description="In-memory deployment target for development and testing",
    status=AdapterStatus.READY,
    provisioning_steps=["Record workload in memory"],
    capabilities=AdapterCapabilities(
        scaling=True,
        sandbox=True,
        persistent_storage=False,
        https_endpoint=True,
        log_streaming=False,
    ),
    tier_specs=[
        TierSpec(tier="light", cpu=0.5, memory_mib=1024, disk_gb=5),
        TierSpec(tier="standard", cpu=1.0, memory_mib=2048, disk_gb=10),
        TierSpec(tier="performance", cpu=2.0, memory_mib=4096, disk_gb=20),
    ],
)


class SimulatedAdapter:
    """In-memory ``InfrastructureAdapter``.

    Parameters
    ----------
    metadata:
        Override the descriptor, e.g. to test capability negotiation.
    """

    def __init__(self, metadata: AdapterMetadata | None = None) -> None:
        self.metadata = metadata or SIMULATED_METADATA
        self.workloads: dict[str, dict[str, Any]] = {}
        self.fail_with: str | None = None  # next create_or_update raises with this message
        self.status: ResourceStatus = ResourceStatus.RUNNING
        self.calls: list[str] = []

    async def create_or_update(
        self,
        name: str,
        effective_config: dict[str, Any],
        tier: TierSpec,
        runtime: RuntimeSpec | None = None,
    ) -> ResourceRef:
        self.calls.append(f"create_or_update:{name}")
        if self.fail_with is not None:
            message, self.fail_with = self.fail_with, None
            raise AdapterFailureError(message)
        existing = self.workloads.get(name)
        ref = existing["ref"] if existing else ResourceRef(
            type=self.metadata.type,
            name=name,
            id=f"sim-{uuid.uuid4().hex[:8]}",
            gateway_host="127.0.0.1",
            gateway_port=18789,
        )
        self.workloads[name] = {
            "ref": ref,
            "config": copy.deepcopy(effective_config),
            "tier": tier.tier,
            "image": runtime.image if runtime else None,
        }
        logger.debug("Simulated workload %s converged (tier %s)", name, tier.tier)
        return ref

    async def describe(self, ref: ResourceRef) -> ResourceDescription:
        self.calls.append(f"describe:{ref.name}")
        workload = self.workloads.get(ref.name)
        if workload is None:
            return ResourceDescription(status=ResourceStatus.UNKNOWN)
        return ResourceDescription(status=self.status, outputs={"tier": workload["tier"]})

    async def delete(self, ref: ResourceRef, options: DeleteOptions | None = None) -> None:
        self.calls.append(f"delete:{ref.name}")
        self.workloads.pop(ref.name, None)

    async def exists(self, name: str) -> bool:
        return name in self.workloads
