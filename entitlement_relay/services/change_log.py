"""
Change Log - Append-only per-user record of content access changes.

Clients that missed a push or a socket message poll this log with the
timestamp of the last change they saw. Timestamps are assigned by the store
and never decrease for a user, and ties are broken by entry id, so paging
by (changed_at, id) never skips or repeats an entry.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import and_, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_relay.db.models import EntitlementChangeRow
from entitlement_relay.models.domain import (
    ChangeLogEntry,
    ChangeType,
    Clock,
    PendingChange,
    utc_now,
)
from entitlement_relay.observability.metrics import metrics

logger = get_logger(__name__)

Cursor = tuple[datetime, int]
PageFetcher = Callable[[Cursor | None, int], Awaitable[list[ChangeLogEntry]]]

DEFAULT_PAGE_SIZE = 200


class ChangeLogQuery:
    """
    Lazy, finite view of a user's changes after a point in time.

    Nothing is read until iteration starts. Each ``async for`` starts over
    from the beginning and sees entries appended since the last pass.
    """

    def __init__(self, fetch_page: PageFetcher, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._fetch_page = fetch_page
        self._page_size = page_size

    async def __aiter__(self) -> AsyncIterator[ChangeLogEntry]:
        cursor: Cursor | None = None
        while True:
            page = await self._fetch_page(cursor, self._page_size)
            for entry in page:
                yield entry
            if len(page) < self._page_size:
                return
            last = page[-1]
            cursor = (last.changed_at, last.entry_id)

    async def to_list(self) -> list[ChangeLogEntry]:
        """Drain the query into a list."""
        return [entry async for entry in self]


class ChangeLogStore(Protocol):
    """Append-only change storage."""

    async def append(self, change: PendingChange) -> ChangeLogEntry:
        """Record one change; the store assigns its id and timestamp."""
        ...

    def query(self, user_id: str, since: datetime) -> ChangeLogQuery:
        """Changes of ``user_id`` strictly after ``since``, oldest first."""
        ...


class InMemoryChangeLogStore:
    """Process-local change log."""

    def __init__(self, clock: Clock = utc_now, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._clock = clock
        self._page_size = page_size
        self._entries: dict[str, list[ChangeLogEntry]] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def append(self, change: PendingChange) -> ChangeLogEntry:
        async with self._lock:
            entries = self._entries.setdefault(change.user_id, [])
            changed_at = self._clock()
            if entries and changed_at <= entries[-1].changed_at:
                # Clock stepped back or did not move: keep per-user order strictly increasing
                changed_at = entries[-1].changed_at + timedelta(microseconds=1)

            entry = ChangeLogEntry(
                entry_id=self._next_id,
                user_id=change.user_id,
                change_type=change.change_type,
                content_id=change.content_id,
                product_id=change.product_id,
                transaction_id=change.transaction_id,
                changed_at=changed_at,
            )
            self._next_id += 1
            entries.append(entry)

        metrics.change_log_appends_total.labels(change_type=change.change_type.value).inc()
        logger.debug(
            "change_log_appended",
            user_id=entry.user_id,
            entry_id=entry.entry_id,
            change_type=entry.change_type.value,
        )
        return entry

    def query(self, user_id: str, since: datetime) -> ChangeLogQuery:
        async def fetch_page(cursor: Cursor | None, limit: int) -> list[ChangeLogEntry]:
            page: list[ChangeLogEntry] = []
            for entry in self._entries.get(user_id, []):
                if entry.changed_at <= since:
                    continue
                if cursor is not None and (entry.changed_at, entry.entry_id) <= cursor:
                    continue
                page.append(entry)
                if len(page) == limit:
                    break
            return page

        return ChangeLogQuery(fetch_page, self._page_size)


class SqlChangeLogStore:
    """
    PostgreSQL change log.

    ``changed_at`` comes from the application clock, bumped past the user's
    latest entry. A transaction-scoped advisory lock per user orders
    concurrent appends from every instance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._page_size = page_size

    async def append(self, change: PendingChange) -> ChangeLogEntry:
        async with self._session_factory() as session:
            # Serialize appends per user until commit so timestamps commit in order
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:user_id))"),
                {"user_id": change.user_id},
            )
            latest_stmt = (
                select(EntitlementChangeRow.changed_at)
                .where(EntitlementChangeRow.user_id == change.user_id)
                .order_by(EntitlementChangeRow.changed_at.desc(), EntitlementChangeRow.id.desc())
                .limit(1)
            )
            latest = (await session.execute(latest_stmt)).scalar_one_or_none()

            changed_at = self._clock()
            if latest is not None and changed_at <= latest:
                changed_at = latest + timedelta(microseconds=1)

            row = EntitlementChangeRow(
                user_id=change.user_id,
                change_type=change.change_type.value,
                content_id=change.content_id,
                product_id=change.product_id,
                transaction_id=change.transaction_id,
                changed_at=changed_at,
            )
            session.add(row)
            await session.flush()
            await session.commit()

        metrics.change_log_appends_total.labels(change_type=change.change_type.value).inc()
        entry = _row_to_entry(row)
        logger.debug(
            "change_log_appended",
            user_id=entry.user_id,
            entry_id=entry.entry_id,
            change_type=entry.change_type.value,
        )
        return entry

    def query(self, user_id: str, since: datetime) -> ChangeLogQuery:
        async def fetch_page(cursor: Cursor | None, limit: int) -> list[ChangeLogEntry]:
            stmt = select(EntitlementChangeRow).where(
                EntitlementChangeRow.user_id == user_id,
                EntitlementChangeRow.changed_at > since,
            )
            if cursor is not None:
                cursor_at, cursor_id = cursor
                stmt = stmt.where(
                    or_(
                        EntitlementChangeRow.changed_at > cursor_at,
                        and_(
                            EntitlementChangeRow.changed_at == cursor_at,
                            EntitlementChangeRow.id > cursor_id,
                        ),
                    )
                )
            stmt = stmt.order_by(EntitlementChangeRow.changed_at, EntitlementChangeRow.id).limit(limit)

            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
            return [_row_to_entry(row) for row in rows]

        return ChangeLogQuery(fetch_page, self._page_size)


def _row_to_entry(row: EntitlementChangeRow) -> ChangeLogEntry:
    """Convert ORM row to domain model."""
    return ChangeLogEntry(
        entry_id=row.id,
        user_id=row.user_id,
        change_type=ChangeType(row.change_type),
        content_id=row.content_id,
        product_id=row.product_id,
        transaction_id=row.transaction_id,
        changed_at=row.changed_at,
    )
