"""Integration tests — full instance lifecycle through the public services.

Exercises manifest creation, asynchronous reconcile dispatch, drift
detection with auto-reconcile, stuck recovery and concurrent writers
against one real SQLite store.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from fleetplane.config import SchedulerConfig
from fleetplane.core.manifests import ManifestService
from fleetplane.core.store import FleetStore
from fleetplane.drift.detector import DriftDetector
from fleetplane.gateway import ConfigSnapshot
from fleetplane.models.drift import DriftAssessment
from fleetplane.models.instances import InstanceStatus
from fleetplane.reconcile.scheduler import ReconcileScheduler


class WorkloadProbe:
    """Reads the live config straight out of the simulated adapter's workloads."""

    def __init__(self, adapter):
        self._adapter = adapter

    async def fetch(self, instance):
        workload = self._adapter.workloads[instance.id]
        return ConfigSnapshot(config=workload["config"], hash="unused")


@pytest.fixture
def service(store, engine):
    return ManifestService(store, dispatcher=engine)


class TestManifestToRunning:
    @pytest.mark.asyncio
    async def test_two_versions_converge_in_order(
        self, store, engine, service, make_instance, manifest_content, simulated_adapter
    ):
        instance = make_instance()

        v1 = service.create(instance.id, manifest_content(), description="initial")
        await engine.wait_idle()
        after_v1 = store.require_instance(instance.id)
        assert after_v1.status == InstanceStatus.RUNNING
        assert after_v1.desired_manifest_id == v1.id

        v2 = service.create(
            instance.id,
            manifest_content(spec={"agent_config": {"model": "large", "tools": {"allow": ["read"]}}}),
            description="bigger model",
        )
        assert store.require_instance(instance.id).status == InstanceStatus.CREATING
        await engine.wait_idle()

        after_v2 = store.require_instance(instance.id)
        assert after_v2.status == InstanceStatus.RUNNING
        assert after_v2.desired_manifest_id == v2.id
        assert after_v2.config_fingerprint != after_v1.config_fingerprint
        assert simulated_adapter.workloads[instance.id]["config"]["model"] == "large"
        assert after_v2.resource_ref == after_v1.resource_ref

        assert [m.version for m in service.list_versions(instance.id)] == [2, 1]
        assert service.get_latest(instance.id).id == v2.id
        actions = [e.action for e in store.list_audit(instance.id)]
        assert actions == [
            "MANIFEST_CREATE",
            "RECONCILE_SUCCEEDED",
            "MANIFEST_CREATE",
            "RECONCILE_SUCCEEDED",
        ]

    @pytest.mark.asyncio
    async def test_failure_then_operator_retry(
        self, store, engine, service, make_instance, manifest_content, simulated_adapter
    ):
        instance = make_instance()
        simulated_adapter.fail_with = "image pull failed"
        service.create(instance.id, manifest_content())
        await engine.wait_idle()

        failed = store.require_instance(instance.id)
        assert failed.status == InstanceStatus.ERROR
        assert failed.last_error.message == "image pull failed"

        service.trigger_reconcile(instance.id, actor="oncall")
        await engine.wait_idle()
        recovered = store.require_instance(instance.id)
        assert recovered.status == InstanceStatus.RUNNING
        assert recovered.last_error is None
        assert recovered.error_count == 1

        trigger = [e for e in store.list_audit(instance.id) if e.action == "RECONCILE_TRIGGER"]
        assert trigger[0].actor == "oncall"


class TestDriftLoop:
    @pytest.mark.asyncio
    async def test_drift_detected_and_corrected(
        self, store, engine, service, make_instance, manifest_content, simulated_adapter
    ):
        instance = make_instance()
        service.create(instance.id, manifest_content())
        await engine.wait_idle()

        detector = DriftDetector(
            store, WorkloadProbe(simulated_adapter), desired_config=engine.effective_config
        )
        scheduler = ReconcileScheduler(
            store, detector, engine, SchedulerConfig(auto_reconcile_on_drift=True)
        )

        [clean] = await scheduler.run_drift_sweep()
        assert clean.assessment == DriftAssessment.IN_SYNC

        # someone edits the agent's config out of band
        simulated_adapter.workloads[instance.id]["config"]["model"] = "tampered"
        [drifted] = await scheduler.run_drift_sweep()
        assert drifted.assessment == DriftAssessment.DRIFTED
        assert drifted.diff == {"model": {"desired": "default", "live": "tampered"}}

        await engine.wait_idle()
        assert simulated_adapter.workloads[instance.id]["config"]["model"] == "default"
        [after] = await scheduler.run_drift_sweep()
        assert after.assessment == DriftAssessment.IN_SYNC


class TestStuckRecovery:
    @pytest.mark.asyncio
    async def test_stuck_instance_recovered_by_retry(
        self, store, engine, service, make_instance, manifest_content, long_ago
    ):
        instance = make_instance()
        manifest = ManifestService(store).create(instance.id, manifest_content())
        # the process that owned this reconcile died long ago
        store.update_instance(
            store.require_instance(instance.id).model_copy(update={"updated_at": long_ago})
        )

        scheduler = ReconcileScheduler(
            store, DriftDetector(store, WorkloadProbe(None)), engine, SchedulerConfig()
        )
        [moved] = await scheduler.run_stuck_sweep()
        assert moved.status == InstanceStatus.ERROR
        assert moved.desired_manifest_id == manifest.id

        service.trigger_reconcile(instance.id)
        await engine.wait_idle()
        assert store.require_instance(instance.id).status == InstanceStatus.RUNNING


class TestConcurrentWriters:
    def test_parallel_creates_get_contiguous_versions(self, store, make_instance, manifest_content):
        instance = make_instance()
        service = ManifestService(store)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [
                pool.submit(service.create, instance.id, manifest_content(), f"writer {n}")
                for n in range(12)
            ]
            created = [f.result() for f in futures]

        assert sorted(m.version for m in created) == list(range(1, 13))
        latest = service.get_latest(instance.id)
        assert latest.version == 12
        assert store.require_instance(instance.id).desired_manifest_id == latest.id

    def test_two_services_one_store(self, tmp_dir, make_instance, manifest_content, store):
        instance = make_instance()
        first = ManifestService(store)
        second = ManifestService(FleetStore(tmp_dir / "fleet.db"))

        with ThreadPoolExecutor(max_workers=2) as pool:
            a = pool.submit(first.create, instance.id, manifest_content())
            b = pool.submit(second.create, instance.id, manifest_content())
            versions = {a.result().version, b.result().version}

        assert versions == {1, 2}
