"""AdapterRegistry — deployment type -> adapter lookup.

The registry is a process-wide singleton populated at startup. It does no
I/O: it looks adapters up and validates that an adapter offers what a
manifest asks for before the engine dispatches to it. Adding a backend
means registering one more adapter, never changing the dispatch code.
"""

from __future__ import annotations

import logging
import threading

from fleetplane.adapters.base import InfrastructureAdapter
from fleetplane.core.errors import AdapterFailureError, AdapterNotFoundError, CapabilityMismatchError
from fleetplane.models.adapters import AdapterMetadata, AdapterStatus, TierSpec
from fleetplane.models.manifests import InboundMode, Manifest

logger = logging.getLogger(__name__)


def required_capabilities(manifest: Manifest) -> set[str]:
    """Capabilities an adapter must offer to host *manifest*."""
    required: set[str] = set()
    if manifest.spec.sandbox:
        required.add("sandbox")
    if manifest.spec.runtime.replicas > 1:
        required.add("scaling")
    if manifest.spec.network.inbound != InboundMode.NONE:
        required.add("https_endpoint")
    return required


class AdapterRegistry:
    """Maps deployment types to adapters and their static metadata.

    Types can be registered with metadata only (e.g. backends that are
    announced but not yet available); they appear in ``list_metadata()``
    but dispatching to them fails.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, InfrastructureAdapter] = {}
        self._metadata: dict[str, AdapterMetadata] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, adapter: InfrastructureAdapter) -> None:
        metadata = adapter.metadata
        self._adapters[metadata.type] = adapter
        self._metadata[metadata.type] = metadata
        logger.info("Registered adapter %s (%s)", metadata.type, metadata.status.value)

    def register_metadata(self, metadata: AdapterMetadata) -> None:
        """Announce a deployment type without an implementation."""
        self._metadata[metadata.type] = metadata
        logger.info("Registered adapter metadata %s (%s)", metadata.type, metadata.status.value)

    def unregister(self, adapter_type: str) -> None:
        self._adapters.pop(adapter_type, None)
        self._metadata.pop(adapter_type, None)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def is_registered(self, adapter_type: str) -> bool:
        return adapter_type in self._adapters

    def metadata(self, adapter_type: str) -> AdapterMetadata:
        try:
            return self._metadata[adapter_type]
        except KeyError:
            raise AdapterNotFoundError(f"Unknown deployment type: {adapter_type}") from None

    def list_metadata(self) -> list[AdapterMetadata]:
        return sorted(self._metadata.values(), key=lambda m: m.type)

    def get(self, adapter_type: str) -> InfrastructureAdapter:
        """Return the adapter for *adapter_type*.

        Raises
        ------
        AdapterNotFoundError
            Nothing is registered under that type.
        AdapterFailureError
            The type is announced but has no implementation yet.
        """
        metadata = self.metadata(adapter_type)
        adapter = self._adapters.get(adapter_type)
        if adapter is None or metadata.status == AdapterStatus.COMING_SOON:
            raise AdapterFailureError(
                f"Deployment type {adapter_type} is {metadata.status.value}; no adapter available"
            )
        return adapter

    def negotiate(
        self, adapter_type: str, required: set[str], tier: str
    ) -> tuple[InfrastructureAdapter, TierSpec]:
        """Select the adapter and tier, checking required capabilities first.

        Raises
        ------
        CapabilityMismatchError
            The adapter lacks a required capability or does not offer *tier*.
        """
        adapter = self.get(adapter_type)
        missing = adapter.metadata.capabilities.missing(required)
        if missing:
            raise CapabilityMismatchError(
                f"Adapter {adapter_type} lacks required capabilities: {', '.join(missing)}"
            )
        spec = adapter.metadata.tier(tier)
        if spec is None:
            offered = [t.tier for t in adapter.metadata.tier_specs]
            raise CapabilityMismatchError(
                f"Adapter {adapter_type} does not offer tier {tier!r}. Offered: {offered}"
            )
        return adapter, spec


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_registry: AdapterRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> AdapterRegistry:
    """Return the process-wide registry, populating it with the built-ins once."""
    global _registry
    with _registry_lock:
        if _registry is None:
            from fleetplane.adapters.catalog import register_builtin_adapters

            registry = AdapterRegistry()
            register_builtin_adapters(registry)
            _registry = registry
        return _registry


def reset_registry() -> None:
    """Drop the singleton so the next ``get_registry()`` rebuilds it."""
    global _registry
    with _registry_lock:
        _registry = None
