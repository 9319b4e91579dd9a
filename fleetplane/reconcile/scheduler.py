"""Periodic scheduler — drift sweeps and stuck-instance recovery.

Two independent loops run on the event loop:

- **drift sweep**: checks every RUNNING/DEGRADED instance and reports
  drift. With ``auto_reconcile_on_drift`` enabled, each drifted instance
  is handed to the reconciliation engine.
- **stuck sweep**: any instance left in CREATING or RECONCILING for longer
  than the threshold is moved to ERROR with a recorded timeout, so a
  crashed reconcile never blocks an instance forever.

A failing sweep, or a failure on one instance within a sweep, is logged
and never stops the loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from fleetplane.config import SchedulerConfig
from fleetplane.core.errors import StuckTimeoutError
from fleetplane.core.lifecycle import InstanceStateMachine
from fleetplane.core.store import FleetStore
from fleetplane.drift.detector import DriftDetector
from fleetplane.models.audit import AuditEvent
from fleetplane.models.drift import DriftResult
from fleetplane.models.instances import TRANSITIONAL, Instance
from fleetplane.reconcile.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


class ReconcileScheduler:
    """Runs the drift and stuck sweeps on fixed intervals."""

    def __init__(
        self,
        store: FleetStore,
        detector: DriftDetector,
        engine: ReconciliationEngine,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._engine = engine
        self._config = config or SchedulerConfig()
        self._lifecycle = InstanceStateMachine(store)
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start both sweep loops. Calling twice is a no-op."""
        if self._running:
            logger.debug("Scheduler already running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._loop("drift", self._config.drift_interval_seconds, self.run_drift_sweep),
                name="fleetplane-drift-sweep",
            ),
            asyncio.create_task(
                self._loop("stuck", self._config.stuck_interval_seconds, self.run_stuck_sweep),
                name="fleetplane-stuck-sweep",
            ),
        ]
        logger.info(
            "Scheduler started (drift every %ss, stuck every %ss, auto-reconcile=%s)",
            self._config.drift_interval_seconds,
            self._config.stuck_interval_seconds,
            self._config.auto_reconcile_on_drift,
        )

    async def stop(self) -> None:
        """Cancel both loops and wait for them to exit."""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Scheduler stopped")

    async def __aenter__(self) -> ReconcileScheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _loop(
        self,
        name: str,
        interval: float,
        sweep: Callable[[], Awaitable[list[Any]]],
    ) -> None:
        while self._running:
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("%s sweep failed", name)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def run_drift_sweep(self) -> list[DriftResult]:
        """Check the fleet once and optionally reconcile drifted instances."""
        try:
            results = await asyncio.wait_for(
                self._detector.check_fleet(), self._config.sweep_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Drift sweep exceeded %ss and was abandoned", self._config.sweep_timeout_seconds
            )
            return []

        drifted = [r for r in results if r.has_drift]
        if drifted:
            logger.warning(
                "Drift sweep: %d of %d instance(s) drifted", len(drifted), len(results)
            )
        else:
            logger.info("Drift sweep: %d instance(s) checked, none drifted", len(results))

        if self._config.auto_reconcile_on_drift:
            for result in drifted:
                try:
                    self._engine.submit(result.instance_id)
                except Exception:  # noqa: BLE001
                    logger.exception("Could not submit reconcile for %s", result.instance_id)
        return results

    async def run_stuck_sweep(self) -> list[Instance]:
        """Move instances stuck in a transitional status to ERROR."""
        threshold = self._config.stuck_threshold_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=threshold)
        moved: list[Instance] = []
        for candidate in self._store.list_stale(TRANSITIONAL, cutoff):
            try:
                updated = self._fail_stuck(candidate.id, cutoff, threshold)
            except Exception:  # noqa: BLE001
                logger.exception("Stuck sweep could not process %s", candidate.id)
                continue
            if updated is not None:
                moved.append(updated)
        if moved:
            logger.warning("Stuck sweep moved %d instance(s) to ERROR", len(moved))
        return moved

    def _fail_stuck(self, instance_id: str, cutoff: datetime, threshold: float) -> Instance | None:
        with self._store.transaction() as tx:
            current = tx.get_instance(instance_id)
            # Re-read inside the write lock; a reconcile may have finished meanwhile.
            if current is None or current.status not in TRANSITIONAL or current.updated_at >= cutoff:
                return None
            error = StuckTimeoutError(
                f"Instance stuck in {current.status.value} for more than {threshold}s"
            )
            updated = self._lifecycle.failed(current, str(error))
            tx.update_instance(updated)
            tx.append_audit(
                AuditEvent(
                    action="STUCK_TIMEOUT",
                    resource_id=instance_id,
                    workspace_id=current.workspace_id,
                    diff_summary=str(error),
                    metadata={"from": current.status.value, "to": updated.status.value},
                )
            )
        logger.error("Instance %s: %s", instance_id, error)
        return updated
