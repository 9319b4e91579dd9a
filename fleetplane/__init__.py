"""Fleetplane: declarative reconciliation control plane for agent fleets.

Operators declare each instance's desired configuration as a versioned
manifest; the control plane validates it against policy, derives the
effective configuration through a preprocessor pipeline, deploys it
through a pluggable infrastructure adapter, and keeps watching for drift
between what was applied and what is live.
"""

__version__ = "0.1.0"

from fleetplane.core.manifests import ManifestService
from fleetplane.core.store import FleetStore
from fleetplane.reconcile.engine import ReconciliationEngine
from fleetplane.reconcile.scheduler import ReconcileScheduler

__all__ = [
    "FleetStore",
    "ManifestService",
    "ReconcileScheduler",
    "ReconciliationEngine",
    "__version__",
]
