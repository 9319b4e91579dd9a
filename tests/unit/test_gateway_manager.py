"""Tests for GatewayManager — client pooling per instance."""

from __future__ import annotations

import pytest

from fleetplane.gateway import GatewayAuth, GatewayManager, GatewayUnavailableError, ReconnectOptions


@pytest.fixture
def manager(fake_gateway) -> GatewayManager:
    return GatewayManager(
        timeout=1.0,
        reconnect=ReconnectOptions(enabled=False),
        transport_factory=fake_gateway.factory,
    )


AUTH = GatewayAuth(token="tok")


class TestGatewayManager:
    @pytest.mark.asyncio
    async def test_reuses_connected_client(self, manager, fake_gateway):
        async with manager:
            first = await manager.get_client("inst-a", "10.0.0.1", AUTH)
            second = await manager.get_client("inst-a", "10.0.0.1", AUTH)
            assert first is second
            assert len(fake_gateway.transports) == 1
            assert manager.connected_instances() == ["inst-a"]

    @pytest.mark.asyncio
    async def test_one_client_per_instance(self, manager, fake_gateway):
        async with manager:
            a = await manager.get_client("inst-a", "10.0.0.1", AUTH)
            b = await manager.get_client("inst-b", "10.0.0.2", AUTH, port=9000)
            assert a is not b
            assert b.url == "ws://10.0.0.2:9000"
            assert sorted(manager.connected_instances()) == ["inst-a", "inst-b"]

    @pytest.mark.asyncio
    async def test_replaces_stale_client(self, manager, fake_gateway):
        async with manager:
            first = await manager.get_client("inst-a", "10.0.0.1", AUTH)
            fake_gateway.transports[0].drop()
            assert not first.is_connected

            second = await manager.get_client("inst-a", "10.0.0.1", AUTH)
            assert second is not first
            assert second.is_connected
            assert len(fake_gateway.transports) == 2

    @pytest.mark.asyncio
    async def test_failed_connect_not_pooled(self, manager, fake_gateway):
        fake_gateway.unreachable = True
        with pytest.raises(GatewayUnavailableError):
            await manager.get_client("inst-a", "10.0.0.1", AUTH)
        assert manager.connected_instances() == []

        fake_gateway.unreachable = False
        client = await manager.get_client("inst-a", "10.0.0.1", AUTH)
        assert client.is_connected
        await manager.disconnect_all()

    @pytest.mark.asyncio
    async def test_remove_and_disconnect_all(self, manager, fake_gateway):
        a = await manager.get_client("inst-a", "10.0.0.1", AUTH)
        b = await manager.get_client("inst-b", "10.0.0.2", AUTH)

        await manager.remove_client("inst-a")
        assert not a.is_connected
        assert manager.connected_instances() == ["inst-b"]
        await manager.remove_client("inst-missing")

        await manager.disconnect_all()
        assert not b.is_connected
        assert manager.connected_instances() == []
        assert all(t.closed for t in fake_gateway.transports)
