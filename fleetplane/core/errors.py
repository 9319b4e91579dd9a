"""Control-plane error taxonomy.

Validation and precondition errors are raised synchronously and never
leave state behind. Mid-reconcile failures are caught by the engine and
recorded on the instance instead of being propagated.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetplane.models.policy import PolicyViolation


class FleetplaneError(RuntimeError):
    """Base class for all control-plane errors."""


class NotFoundError(FleetplaneError):
    """Raised when an instance or manifest does not exist."""


class PolicyRejectedError(FleetplaneError):
    """Raised when a manifest carries ERROR-severity policy violations."""

    def __init__(self, violations: list[PolicyViolation]) -> None:
        self.violations = list(violations)
        details = "; ".join(f"{v.code}: {v.message}" for v in self.violations)
        super().__init__(f"Manifest rejected by policy: {details}")


class InvalidStateError(FleetplaneError):
    """Raised when an operation is not valid for the instance's current state."""


class InvalidTransitionError(InvalidStateError):
    """Raised when a requested status transition is not in the transition table."""


class AdapterFailureError(FleetplaneError):
    """Raised when an infrastructure adapter operation fails."""


class AdapterNotFoundError(AdapterFailureError):
    """Raised when no adapter is registered for a deployment type."""


class CapabilityMismatchError(AdapterFailureError):
    """Raised when an adapter lacks a capability the manifest requires."""


class StuckTimeoutError(FleetplaneError):
    """Raised (and recorded) when an instance exceeds the transitional-state threshold."""
