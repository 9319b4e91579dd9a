"""Drift detector — desired vs. live configuration fingerprints.

For each RUNNING or DEGRADED instance the live configuration is fetched
over the gateway channel and fingerprinted the same way the engine
fingerprints what it applied. Equal fingerprints mean in sync, different
ones mean drift. Anything that prevents a comparison (unreachable
gateway, timeout, bad credential, malformed reply) yields UNKNOWN, which
is never treated as drift.

Checks run concurrently, bounded by a semaphore, and each one is wrapped
in its own timeout so one slow agent cannot stall the sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from fleetplane.core.hasher import config_diff, config_fingerprint
from fleetplane.core.store import FleetStore
from fleetplane.gateway.protocol import ConfigSnapshot
from fleetplane.models.drift import DriftAssessment, DriftResult
from fleetplane.models.instances import DRIFT_ELIGIBLE, Instance

logger = logging.getLogger(__name__)

DesiredConfigSource = Callable[[Instance], dict[str, Any] | None]


@runtime_checkable
class LiveConfigProbe(Protocol):
    """Fetches the live configuration of one instance."""

    async def fetch(self, instance: Instance) -> ConfigSnapshot:
        ...


def live_fingerprint(snapshot: ConfigSnapshot) -> str:
    """Fingerprint of a live snapshot, computed locally when the config is present."""
    if snapshot.config:
        return config_fingerprint(snapshot.config)
    return snapshot.hash


class DriftDetector:
    """Compares recorded fingerprints with live gateway state.

    Parameters
    ----------
    store:
        Source of the instances to check.
    probe:
        Fetches live configuration for one instance (``InstanceGateway``
        in production).
    concurrency:
        Maximum number of checks in flight.
    timeout:
        Seconds allowed for one instance's check.
    desired_config:
        Optional callable returning the desired effective configuration,
        used only to attach a structured diff to drifted results.
    """

    def __init__(
        self,
        store: FleetStore,
        probe: LiveConfigProbe,
        concurrency: int = 8,
        timeout: float = 15.0,
        desired_config: DesiredConfigSource | None = None,
    ) -> None:
        self._store = store
        self._probe = probe
        self._concurrency = max(1, concurrency)
        self._timeout = timeout
        self._desired_config = desired_config

    def _unknown(self, instance: Instance, reason: str) -> DriftResult:
        logger.info("Drift for %s not assessed: %s", instance.id, reason)
        return DriftResult(
            instance_id=instance.id,
            assessment=DriftAssessment.UNKNOWN,
            desired_hash=instance.config_fingerprint,
            error=reason,
        )

    async def check(self, instance: Instance) -> DriftResult:
        """Check one instance. Never raises for gateway or probe failures."""
        if instance.status not in DRIFT_ELIGIBLE:
            return self._unknown(instance, f"status {instance.status.value} is not drift-eligible")
        desired = instance.config_fingerprint
        if desired is None:
            return self._unknown(instance, "no applied configuration recorded")

        try:
            snapshot = await asyncio.wait_for(self._probe.fetch(instance), self._timeout)
        except asyncio.TimeoutError:
            return self._unknown(instance, f"gateway check timed out after {self._timeout}s")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Drift check for %s failed: %s", instance.id, exc)
            return self._unknown(instance, f"{type(exc).__name__}: {exc}")

        live = live_fingerprint(snapshot)
        if live == desired:
            return DriftResult(
                instance_id=instance.id,
                assessment=DriftAssessment.IN_SYNC,
                desired_hash=desired,
                live_hash=live,
            )

        diff = None
        if self._desired_config is not None:
            try:
                wanted = self._desired_config(instance)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not rebuild desired config for %s: %s", instance.id, exc)
                wanted = None
            if wanted is not None:
                diff = config_diff(wanted, snapshot.config)

        logger.warning("Drift detected on %s: desired %s, live %s", instance.id, desired[:12], live[:12])
        return DriftResult(
            instance_id=instance.id,
            assessment=DriftAssessment.DRIFTED,
            desired_hash=desired,
            live_hash=live,
            diff=diff,
        )

    async def check_fleet(self, instances: list[Instance] | None = None) -> list[DriftResult]:
        """Check every eligible instance with bounded concurrency.

        Results come back in input order; no ordering is implied between
        the checks themselves.
        """
        if instances is None:
            instances = self._store.list_instances(DRIFT_ELIGIBLE)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(instance: Instance) -> DriftResult:
            async with semaphore:
                return await self.check(instance)

        return list(await asyncio.gather(*(bounded(i) for i in instances)))
