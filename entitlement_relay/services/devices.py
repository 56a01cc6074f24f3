"""
Device Registry - Push targets per user.

Registering the same token twice refreshes it instead of duplicating it.
"""

import asyncio
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_relay.db.models import DeviceTokenRow
from entitlement_relay.models.domain import Clock, DeviceToken, utc_now

logger = get_logger(__name__)


class DeviceRegistry(Protocol):
    """Storage of device tokens."""

    async def register(self, user_id: str, device_token: str, platform: str) -> DeviceToken:
        ...

    async def unregister(self, user_id: str, device_token: str) -> bool:
        """Returns False if the token was not registered for the user."""
        ...

    async def tokens_for(self, user_id: str) -> list[DeviceToken]:
        ...


class InMemoryDeviceRegistry:
    """Process-local registry."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._devices: dict[str, dict[str, DeviceToken]] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, device_token: str, platform: str) -> DeviceToken:
        device = DeviceToken(
            user_id=user_id,
            device_token=device_token,
            platform=platform,
            registered_at=self._clock(),
        )
        async with self._lock:
            self._devices.setdefault(user_id, {})[device_token] = device
        logger.info("device_registered", user_id=user_id, platform=platform)
        return device

    async def unregister(self, user_id: str, device_token: str) -> bool:
        async with self._lock:
            devices = self._devices.get(user_id, {})
            if device_token not in devices:
                return False
            del devices[device_token]
        logger.info("device_unregistered", user_id=user_id)
        return True

    async def tokens_for(self, user_id: str) -> list[DeviceToken]:
        return list(self._devices.get(user_id, {}).values())


class SqlDeviceRegistry:
    """PostgreSQL registry."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], clock: Clock = utc_now
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def register(self, user_id: str, device_token: str, platform: str) -> DeviceToken:
        now = self._clock()
        async with self._session_factory() as session:
            session.add(
                DeviceTokenRow(
                    user_id=user_id,
                    device_token=device_token,
                    platform=platform,
                    registered_at=now,
                )
            )
            try:
                await session.flush()
                await session.commit()
            except IntegrityError:
                # Already registered - refresh platform and timestamp
                await session.rollback()
                stmt = select(DeviceTokenRow).where(
                    DeviceTokenRow.user_id == user_id,
                    DeviceTokenRow.device_token == device_token,
                )
                row = (await session.execute(stmt)).scalar_one()
                row.platform = platform
                row.registered_at = now
                await session.commit()

        logger.info("device_registered", user_id=user_id, platform=platform)
        return DeviceToken(
            user_id=user_id, device_token=device_token, platform=platform, registered_at=now
        )

    async def unregister(self, user_id: str, device_token: str) -> bool:
        async with self._session_factory() as session:
            stmt = delete(DeviceTokenRow).where(
                DeviceTokenRow.user_id == user_id,
                DeviceTokenRow.device_token == device_token,
            )
            result = await session.execute(stmt)
            await session.commit()

        removed = bool(result.rowcount)  # type: ignore[attr-defined]
        if removed:
            logger.info("device_unregistered", user_id=user_id)
        return removed

    async def tokens_for(self, user_id: str) -> list[DeviceToken]:
        async with self._session_factory() as session:
            stmt = select(DeviceTokenRow).where(DeviceTokenRow.user_id == user_id)
            rows = (await session.execute(stmt)).scalars().all()
        return [
            DeviceToken(
                user_id=row.user_id,
                device_token=row.device_token,
                platform=row.platform,
                registered_at=row.registered_at,
            )
            for row in rows
        ]
