"""Infrastructure adapter contract.

Each deployment backend (docker, a cloud container service, a VM) is one
adapter. The reconciliation engine only ever talks to this protocol; the
registry picks the implementation by the instance's deployment type.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from fleetplane.models.adapters import AdapterMetadata, ResourceDescription, ResourceRef, TierSpec
from fleetplane.models.manifests import RuntimeSpec


class DeleteOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    force: bool = False
    keep_volumes: bool = False


@runtime_checkable
class InfrastructureAdapter(Protocol):
    """Protocol every deployment backend implements.

    All methods are coroutines and must raise ``AdapterFailureError`` for
    infrastructure failures so the engine can record them uniformly.
    """

    metadata: AdapterMetadata

    async def create_or_update(
        self,
        name: str,
        effective_config: dict[str, Any],
        tier: TierSpec,
        runtime: RuntimeSpec | None = None,
    ) -> ResourceRef:
        """Converge the workload called *name* to *effective_config*.

        Parameters
        ----------
        name:
            Stable workload name, derived from the instance.
        effective_config:
            Agent configuration produced by the preprocessor pipeline.
        tier:
            Resource sizing selected from this adapter's tier specs.
        runtime:
            Image, command and replica settings from the manifest.
        """
        ...

    async def describe(self, ref: ResourceRef) -> ResourceDescription:
        ...

    async def delete(self, ref: ResourceRef, options: DeleteOptions | None = None) -> None:
        ...

    async def exists(self, name: str) -> bool:
        ...
