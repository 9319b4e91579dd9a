"""Reconciliation engine and periodic scheduler."""

from fleetplane.reconcile.engine import ReconciliationEngine
from fleetplane.reconcile.scheduler import ReconcileScheduler

__all__ = ["ReconcileScheduler", "ReconciliationEngine"]
