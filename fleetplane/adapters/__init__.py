"""Pluggable infrastructure adapters."""

from fleetplane.adapters.base import DeleteOptions, InfrastructureAdapter
from fleetplane.adapters.registry import (
    AdapterRegistry,
    get_registry,
    required_capabilities,
    reset_registry,
)

__all__ = [
    "AdapterRegistry",
    "DeleteOptions",
    "InfrastructureAdapter",
    "get_registry",
    "required_capabilities",
    "reset_registry",
]
