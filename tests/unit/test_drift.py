"""Tests for the DriftDetector and the gateway-backed config probe."""

from __future__ import annotations

import asyncio

import pytest

from fleetplane.core.hasher import config_fingerprint
from fleetplane.drift.detector import DriftDetector, live_fingerprint
from fleetplane.gateway import (
    ConfigSnapshot,
    GatewayManager,
    GatewayUnavailableError,
    InstanceGateway,
    ReconnectOptions,
)
from fleetplane.models.drift import DriftAssessment
from fleetplane.models.instances import InstanceStatus
from fleetplane.secrets.store import GATEWAY_TOKEN_KEY, LocalSecretStore

DESIRED = {"model": "default", "tools": {"allow": ["read"]}}


class StubProbe:
    """Returns a fixed snapshot per instance id, or raises / stalls on request."""

    def __init__(self, snapshots=None, errors=None, stall=()):
        self.snapshots = snapshots or {}
        self.errors = errors or {}
        self.stall = set(stall)
        self.calls: list[str] = []

    async def fetch(self, instance):
        self.calls.append(instance.id)
        if instance.id in self.stall:
            await asyncio.sleep(10)
        if instance.id in self.errors:
            raise self.errors[instance.id]
        return self.snapshots[instance.id]


@pytest.fixture
def running(make_instance):
    def _factory(name="agent", **overrides):
        overrides.setdefault("config_fingerprint", config_fingerprint(DESIRED))
        overrides.setdefault("gateway_host", "127.0.0.1")
        overrides.setdefault("status", InstanceStatus.RUNNING)
        return make_instance(name, **overrides)

    return _factory


def _snapshot(config):
    return ConfigSnapshot(config=config, hash="gateway-side-hash")


class TestLiveFingerprint:
    def test_computed_from_config(self):
        snapshot = _snapshot({"tools": {"allow": ["read"]}, "model": "default"})
        assert live_fingerprint(snapshot) == config_fingerprint(DESIRED)

    def test_falls_back_to_reported_hash(self):
        assert live_fingerprint(_snapshot({})) == "gateway-side-hash"


class TestDriftDetector:
    @pytest.mark.asyncio
    async def test_in_sync(self, store, running):
        instance = running()
        detector = DriftDetector(store, StubProbe({instance.id: _snapshot(dict(DESIRED))}))
        result = await detector.check(instance)
        assert result.assessment == DriftAssessment.IN_SYNC
        assert result.has_drift is False
        assert result.live_hash == result.desired_hash

    @pytest.mark.asyncio
    async def test_drifted_with_diff(self, store, running):
        instance = running()
        live = {"model": "other", "tools": {"allow": ["read"]}}
        detector = DriftDetector(
            store,
            StubProbe({instance.id: _snapshot(live)}),
            desired_config=lambda inst: DESIRED,
        )
        result = await detector.check(instance)
        assert result.assessment == DriftAssessment.DRIFTED
        assert result.has_drift is True
        assert result.diff == {"model": {"desired": "default", "live": "other"}}

    @pytest.mark.asyncio
    async def test_drift_without_desired_source_has_no_diff(self, store, running):
        instance = running()
        detector = DriftDetector(store, StubProbe({instance.id: _snapshot({"model": "x"})}))
        result = await detector.check(instance)
        assert result.has_drift is True
        assert result.diff is None

    @pytest.mark.asyncio
    async def test_failing_desired_source_still_reports_drift(self, store, running):
        instance = running()

        def broken(inst):
            raise RuntimeError("manifest gone")

        detector = DriftDetector(
            store, StubProbe({instance.id: _snapshot({"model": "x"})}), desired_config=broken
        )
        result = await detector.check(instance)
        assert result.has_drift is True
        assert result.diff is None

    @pytest.mark.asyncio
    async def test_probe_error_is_unknown(self, store, running):
        instance = running()
        probe = StubProbe(errors={instance.id: GatewayUnavailableError("refused")})
        result = await DriftDetector(store, probe).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert result.has_drift is None
        assert "GatewayUnavailableError" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_unknown(self, store, running):
        instance = running()
        probe = StubProbe(stall=[instance.id])
        result = await DriftDetector(store, probe, timeout=0.05).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_ineligible_status_not_probed(self, store, make_instance):
        instance = make_instance(status=InstanceStatus.STOPPED, config_fingerprint="abc")
        probe = StubProbe()
        result = await DriftDetector(store, probe).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_never_applied_is_unknown(self, store, running):
        instance = running(config_fingerprint=None)
        probe = StubProbe()
        result = await DriftDetector(store, probe).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert probe.calls == []


class TestCheckFleet:
    @pytest.mark.asyncio
    async def test_failures_isolated_per_instance(self, store, running, make_instance):
        ok = running("ok")
        drifted = running("drifted", status=InstanceStatus.DEGRADED)
        broken = running("broken")
        slow = running("slow")
        make_instance("pending")  # not eligible, never listed

        probe = StubProbe(
            snapshots={ok.id: _snapshot(dict(DESIRED)), drifted.id: _snapshot({"model": "x"})},
            errors={broken.id: RuntimeError("boom")},
            stall=[slow.id],
        )
        results = await DriftDetector(store, probe, concurrency=2, timeout=0.1).check_fleet()

        by_id = {r.instance_id: r.assessment for r in results}
        assert by_id == {
            ok.id: DriftAssessment.IN_SYNC,
            drifted.id: DriftAssessment.DRIFTED,
            broken.id: DriftAssessment.UNKNOWN,
            slow.id: DriftAssessment.UNKNOWN,
        }

    @pytest.mark.asyncio
    async def test_explicit_instance_list_keeps_order(self, store, running):
        first, second = running("first"), running("second")
        probe = StubProbe({i.id: _snapshot(dict(DESIRED)) for i in (first, second)})
        results = await DriftDetector(store, probe).check_fleet([second, first])
        assert [r.instance_id for r in results] == [second.id, first.id]


class TestInstanceGatewayLiveConfig:
    @pytest.fixture
    def secrets(self, tmp_dir):
        return LocalSecretStore(tmp_dir / "secrets.json")

    @pytest.fixture
    def manager(self, fake_gateway):
        return GatewayManager(
            timeout=1.0,
            reconnect=ReconnectOptions(enabled=False),
            transport_factory=fake_gateway.factory,
        )

    @pytest.mark.asyncio
    async def test_live_config_over_gateway(self, store, running, secrets, manager, fake_gateway):
        instance = running()
        secrets.store(instance.id, GATEWAY_TOKEN_KEY, "tok")
        fake_gateway.live_config = dict(DESIRED)

        detector = DriftDetector(store, InstanceGateway(manager, secrets))
        try:
            result = await detector.check(instance)
        finally:
            await manager.disconnect_all()

        assert result.assessment == DriftAssessment.IN_SYNC
        connect = fake_gateway.transports[0].sent[0]
        assert connect["auth"]["token"] == "tok"

    @pytest.mark.asyncio
    async def test_missing_credential_is_unknown(self, store, running, secrets, manager, fake_gateway):
        instance = running()
        result = await DriftDetector(store, InstanceGateway(manager, secrets)).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert "GatewayAuthError" in result.error
        assert fake_gateway.transports == []

    @pytest.mark.asyncio
    async def test_missing_endpoint_is_unknown(self, store, running, secrets, manager):
        instance = running(gateway_host=None)
        secrets.store(instance.id, GATEWAY_TOKEN_KEY, "tok")
        result = await DriftDetector(store, InstanceGateway(manager, secrets)).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN

    @pytest.mark.asyncio
    async def test_rejected_auth_is_unknown(self, store, running, secrets, manager, fake_gateway):
        instance = running()
        secrets.store(instance.id, GATEWAY_TOKEN_KEY, "wrong")
        fake_gateway.reject_auth = True
        result = await DriftDetector(store, InstanceGateway(manager, secrets)).check(instance)
        assert result.assessment == DriftAssessment.UNKNOWN
        assert result.has_drift is None
