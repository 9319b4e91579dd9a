"""Shared test fixtures for Fleetplane."""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from fleetplane.adapters.registry import AdapterRegistry
from fleetplane.adapters.simulated import SimulatedAdapter
from fleetplane.core.hasher import config_fingerprint
from fleetplane.core.manifests import ManifestService
from fleetplane.core.store import FleetStore
from fleetplane.gateway.errors import GatewayUnavailableError
from fleetplane.models.instances import Instance, InstanceStatus
from fleetplane.preprocessors import PreprocessorPipeline, default_pipeline
from fleetplane.reconcile.engine import ReconciliationEngine

_VALID_MANIFEST: dict[str, Any] = {
    "api_version": "fleetplane/v1",
    "kind": "AgentInstance",
    "metadata": {"name": "support-bot", "workspace": "ws-test", "environment": "dev"},
    "spec": {
        "runtime": {"image": "ghcr.io/example/agent:1.4.2", "cpu": 1, "memory_mib": 2048},
        "secrets": [{"name": "slack-token", "provider": "local", "key": "slack/bot"}],
        "channels": [{"type": "slack", "enabled": True, "secret_ref": "slack-token"}],
        "skills": {"mode": "ALLOWLIST", "allowlist": ["web-search"]},
        "network": {"inbound": "NONE", "egress_preset": "RESTRICTED"},
        "agent_config": {"model": "default", "tools": {"allow": ["read"]}},
    },
}


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases and files."""
    return tmp_path


@pytest.fixture
def store(tmp_dir: Path) -> FleetStore:
    """Provide a fresh FleetStore backed by a temp SQLite database."""
    return FleetStore(tmp_dir / "fleet.db")


@pytest.fixture
def make_instance(store: FleetStore) -> Callable[..., Instance]:
    """Factory fixture: persist an Instance with sensible defaults."""

    def _factory(
        name: str = "support-bot",
        status: InstanceStatus = InstanceStatus.PENDING,
        **overrides: Any,
    ) -> Instance:
        fields: dict[str, Any] = {
            "name": name,
            "workspace_id": "ws-test",
            "fleet_id": "fleet-test",
            "status": status,
        }
        fields.update(overrides)
        return store.create_instance(Instance(**fields))

    return _factory


@pytest.fixture
def manifest_content() -> Callable[..., dict[str, Any]]:
    """Factory fixture: a policy-clean manifest document, optionally patched.

    ``spec`` and ``metadata`` overrides are merged one level deep.
    """

    def _factory(**overrides: Any) -> dict[str, Any]:
        content = copy.deepcopy(_VALID_MANIFEST)
        for section in ("spec", "metadata"):
            if section in overrides:
                content[section].update(overrides.pop(section))
        content.update(overrides)
        return content

    return _factory


@pytest.fixture
def manifest_service(store: FleetStore) -> ManifestService:
    """Provide a ManifestService without a dispatcher."""
    return ManifestService(store)


@pytest.fixture
def simulated_adapter() -> SimulatedAdapter:
    return SimulatedAdapter()


@pytest.fixture
def registry(simulated_adapter: SimulatedAdapter) -> AdapterRegistry:
    """Provide an isolated registry holding only the simulated adapter."""
    registry = AdapterRegistry()
    registry.register(simulated_adapter)
    return registry


@pytest.fixture
def pipeline() -> PreprocessorPipeline:
    return default_pipeline()


@pytest.fixture
def engine(
    store: FleetStore, registry: AdapterRegistry, pipeline: PreprocessorPipeline
) -> ReconciliationEngine:
    """Provide a ReconciliationEngine wired to the test store and registry."""
    return ReconciliationEngine(store, registry=registry, pipeline=pipeline, adapter_timeout=5.0)


@pytest.fixture
def long_ago() -> datetime:
    """A timestamp far enough in the past to count as stale."""
    return datetime(2020, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-process gateway shared by the gateway and drift tests
# ---------------------------------------------------------------------------


class FakeTransport:
    """Queue-backed ``GatewayTransport``; ``None`` in the inbound queue means dropped."""

    def __init__(self, responder: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None) -> None:
        self.inbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.responder = responder
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, frame: dict[str, Any]) -> None:
        self.inbound.put_nowait(frame)

    def drop(self) -> None:
        self._closed = True
        self.inbound.put_nowait(None)

    async def send(self, frame: dict[str, Any]) -> None:
        if self._closed:
            raise GatewayUnavailableError("transport closed")
        self.sent.append(frame)
        if frame.get("type") == "req" and self.responder is not None:
            reply = self.responder(frame)
            if reply is not None:
                self.push(reply)

    async def receive(self) -> dict[str, Any]:
        frame = await self.inbound.get()
        if frame is None:
            raise GatewayUnavailableError("transport closed")
        return frame

    async def close(self) -> None:
        self._closed = True


class FakeGateway:
    """Hands out FakeTransports preloaded with a successful handshake."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.state_version = 3
        self.live_config: dict[str, Any] = {}
        self.live_hash = "live-hash"
        self.healthy = True
        self.applied: list[dict[str, Any]] = []
        self.reject_auth = False
        self.unreachable = False

    def respond(self, frame: dict[str, Any]) -> dict[str, Any] | None:
        method = frame["method"]
        if method == "config.get":
            return self._ok(frame, {"config": self.live_config, "hash": self.live_hash})
        if method == "config.apply":
            params = frame["params"]
            if params["baseHash"] != self.live_hash:
                return {
                    "type": "res",
                    "id": frame["id"],
                    "ok": False,
                    "error": {
                        "code": "INVALID_REQUEST",
                        "message": "base hash is stale",
                        "details": {"reason": "base_hash_mismatch"},
                    },
                }
            self.live_config = json.loads(params["raw"])
            self.live_hash = config_fingerprint(self.live_config)
            self.applied.append(self.live_config)
            return self._ok(frame, {"config": self.live_config, "hash": self.live_hash})
        if method == "health":
            return self._ok(frame, {"ok": self.healthy})
        return None

    @staticmethod
    def _ok(frame: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        return {"type": "res", "id": frame["id"], "ok": True, "payload": payload}

    async def factory(self, url: str) -> FakeTransport:
        if self.unreachable:
            raise OSError("connection refused")
        transport = FakeTransport(self.respond)
        transport.push({"type": "challenge", "nonce": "n-1"})
        if self.reject_auth:
            transport.push({"type": "error", "error": {"code": "NOT_LINKED", "message": "auth rejected"}})
        else:
            transport.push(
                {
                    "type": "connected",
                    "presence": {"users": ["ops"], "stateVersion": self.state_version},
                    "health": {"ok": True},
                    "stateVersion": self.state_version,
                }
            )
        self.transports.append(transport)
        return transport


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()
