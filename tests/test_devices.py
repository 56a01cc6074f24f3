"""
Tests for the device registries.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from entitlement_relay.services.devices import InMemoryDeviceRegistry, SqlDeviceRegistry
from tests.conftest import MutableClock


class TestInMemoryDeviceRegistry:
    """Register, refresh and unregister."""

    @pytest.mark.asyncio
    async def test_register_and_list(self, clock: MutableClock):
        registry = InMemoryDeviceRegistry(clock)

        device = await registry.register("user-1", "token-a", "ios")

        assert device.registered_at == clock.now
        assert await registry.tokens_for("user-1") == [device]
        assert await registry.tokens_for("user-2") == []

    @pytest.mark.asyncio
    async def test_register_twice_refreshes(self, clock: MutableClock):
        registry = InMemoryDeviceRegistry(clock)
        await registry.register("user-1", "token-a", "ios")
        clock.advance(minutes=5)

        await registry.register("user-1", "token-a", "android")

        devices = await registry.tokens_for("user-1")
        assert len(devices) == 1
        assert devices[0].platform == "android"
        assert devices[0].registered_at == clock.now

    @pytest.mark.asyncio
    async def test_unregister(self):
        registry = InMemoryDeviceRegistry()
        await registry.register("user-1", "token-a", "ios")

        assert await registry.unregister("user-1", "token-a") is True
        assert await registry.unregister("user-1", "token-a") is False
        assert await registry.tokens_for("user-1") == []

    @pytest.mark.asyncio
    async def test_unregister_other_users_token(self):
        registry = InMemoryDeviceRegistry()
        await registry.register("user-1", "token-a", "ios")

        assert await registry.unregister("user-2", "token-a") is False
        assert len(await registry.tokens_for("user-1")) == 1


def _session_factory(session: AsyncMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


class TestSqlDeviceRegistry:
    """SQL registry against a mocked session."""

    @pytest.mark.asyncio
    async def test_register_inserts(self, clock: MutableClock):
        session = AsyncMock()
        session.add = MagicMock()
        registry = SqlDeviceRegistry(_session_factory(session), clock)

        device = await registry.register("user-1", "token-a", "ios")

        session.add.assert_called_once()
        session.commit.assert_awaited_once()
        assert device.registered_at == clock.now

    @pytest.mark.asyncio
    async def test_duplicate_refreshes_existing_row(self, clock: MutableClock):
        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        existing = MagicMock(platform="ios")
        result = MagicMock()
        result.scalar_one.return_value = existing
        session.execute.return_value = result
        registry = SqlDeviceRegistry(_session_factory(session), clock)

        await registry.register("user-1", "token-a", "android")

        session.rollback.assert_awaited_once()
        assert existing.platform == "android"
        assert existing.registered_at == clock.now

    @pytest.mark.asyncio
    async def test_unregister_reports_rowcount(self):
        session = AsyncMock()
        session.execute.return_value = MagicMock(rowcount=0)
        registry = SqlDeviceRegistry(_session_factory(session))

        assert await registry.unregister("user-1", "token-a") is False
