"""
Idempotency Store - At-most-once processing per notificationUUID.

Apple retries deliveries until it gets a 2xx, and may deliver the same
notification to several instances at once. A claim is the only gate into
the ledger: exactly one concurrent caller wins it.

Marks move processing -> completed. A processing mark older than the stale
window belongs to a crashed worker and may be claimed again. Completed marks
are kept forever.
"""

import asyncio
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_relay.db.models import IdempotencyMarkRow
from entitlement_relay.models.domain import (
    ClaimResult,
    Clock,
    IdempotencyMark,
    MarkState,
    utc_now,
)

logger = get_logger(__name__)


class IdempotencyStore(Protocol):
    """Durable claim/complete/release of notification ids."""

    async def claim(self, notification_id: str) -> ClaimResult:
        """Atomically claim a notification id for processing."""
        ...

    async def complete(self, notification_id: str) -> None:
        """Mark a claimed notification as fully processed."""
        ...

    async def release(self, notification_id: str) -> None:
        """Drop an in-flight claim so a redelivery can process it."""
        ...

    async def get(self, notification_id: str) -> IdempotencyMark | None:
        """Look up the mark for a notification id."""
        ...


class InMemoryIdempotencyStore:
    """Process-local store. Claims are serialized by a single lock."""

    def __init__(self, stale_after: timedelta, clock: Clock = utc_now) -> None:
        self._stale_after = stale_after
        self._clock = clock
        self._marks: dict[str, IdempotencyMark] = {}
        self._lock = asyncio.Lock()

    async def claim(self, notification_id: str) -> ClaimResult:
        async with self._lock:
            now = self._clock()
            mark = self._marks.get(notification_id)
            if mark is not None:
                stale = (
                    mark.state is MarkState.PROCESSING
                    and mark.claimed_at + self._stale_after <= now
                )
                if not stale:
                    return ClaimResult.ALREADY_PROCESSED
                logger.warning(
                    "idempotency_stale_claim_recovered",
                    notification_id=notification_id,
                    claimed_at=mark.claimed_at.isoformat(),
                )

            self._marks[notification_id] = IdempotencyMark(
                notification_id=notification_id,
                state=MarkState.PROCESSING,
                claimed_at=now,
            )
            return ClaimResult.CLAIMED

    async def complete(self, notification_id: str) -> None:
        async with self._lock:
            mark = self._marks.get(notification_id)
            claimed_at = mark.claimed_at if mark else self._clock()
            self._marks[notification_id] = IdempotencyMark(
                notification_id=notification_id,
                state=MarkState.COMPLETED,
                claimed_at=claimed_at,
                processed_at=self._clock(),
            )

    async def release(self, notification_id: str) -> None:
        async with self._lock:
            mark = self._marks.get(notification_id)
            if mark is not None and mark.state is MarkState.PROCESSING:
                del self._marks[notification_id]

    async def get(self, notification_id: str) -> IdempotencyMark | None:
        return self._marks.get(notification_id)


class SqlIdempotencyStore:
    """
    PostgreSQL-backed store.

    The primary key on notification_id makes the insert the atomic claim;
    a losing insert surfaces as IntegrityError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after: timedelta,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._stale_after = stale_after
        self._clock = clock

    async def claim(self, notification_id: str) -> ClaimResult:
        now = self._clock()
        async with self._session_factory() as session:
            session.add(
                IdempotencyMarkRow(
                    notification_id=notification_id,
                    state=MarkState.PROCESSING.value,
                    claimed_at=now,
                )
            )
            try:
                await session.flush()
                await session.commit()
                return ClaimResult.CLAIMED
            except IntegrityError:
                # Already claimed by someone; only a stale processing mark can be taken over
                await session.rollback()

            stmt = (
                update(IdempotencyMarkRow)
                .where(
                    IdempotencyMarkRow.notification_id == notification_id,
                    IdempotencyMarkRow.state == MarkState.PROCESSING.value,
                    IdempotencyMarkRow.claimed_at <= now - self._stale_after,
                )
                .values(claimed_at=now)
            )
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 1:  # type: ignore[attr-defined]
            logger.warning("idempotency_stale_claim_recovered", notification_id=notification_id)
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY_PROCESSED

    async def complete(self, notification_id: str) -> None:
        async with self._session_factory() as session:
            stmt = (
                update(IdempotencyMarkRow)
                .where(IdempotencyMarkRow.notification_id == notification_id)
                .values(state=MarkState.COMPLETED.value, processed_at=self._clock())
            )
            await session.execute(stmt)
            await session.commit()

    async def release(self, notification_id: str) -> None:
        async with self._session_factory() as session:
            stmt = delete(IdempotencyMarkRow).where(
                IdempotencyMarkRow.notification_id == notification_id,
                IdempotencyMarkRow.state == MarkState.PROCESSING.value,
            )
            await session.execute(stmt)
            await session.commit()

    async def get(self, notification_id: str) -> IdempotencyMark | None:
        async with self._session_factory() as session:
            stmt = select(IdempotencyMarkRow).where(
                IdempotencyMarkRow.notification_id == notification_id
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()

        if row is None:
            return None
        return IdempotencyMark(
            notification_id=row.notification_id,
            state=MarkState(row.state),
            claimed_at=row.claimed_at,
            processed_at=row.processed_at,
        )
