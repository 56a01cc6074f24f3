"""
Entitlement Ledger - Authoritative user -> product access state.

Writes for one (user, product) pair are serialized twice over:
- a per-key asyncio.Lock orders writers inside this process
- the record's ``version`` is compared-and-set by the repository, which
  orders writers across processes sharing one database

A lost compare-and-set re-reads and re-applies the event. Locks are held
only around the read-modify-write; nothing outbound happens under them.

Status is never stored. It is derived at read time from the raw state and
the expiry date, so a subscription whose expiresDate has passed reads as
expired without any notification arriving.

Every write that has something to announce stores the announcement on the
record as ``pending_change``. It stays there until the change log has the
entry and the pipeline acknowledges it; a later event for the same pair
(typically the sender's redelivery) announces it again.
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_relay.db.models import EntitlementRow
from entitlement_relay.exceptions import LedgerConflictError
from entitlement_relay.models.domain import (
    ChangeType,
    Clock,
    EntitlementRecord,
    EntitlementState,
    EntitlementStatus,
    Expired,
    Granted,
    LedgerDelta,
    ProductType,
    Renewed,
    Revoked,
    TransactionInfo,
    Unrecognized,
    utc_now,
)
from entitlement_relay.observability.metrics import metrics
from entitlement_relay.services.content_catalog import ContentCatalog

logger = get_logger(__name__)


# ============================================================================
# Per-key locking
# ============================================================================


class KeyedLocks:
    """One asyncio.Lock per key, dropped once no task holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ============================================================================
# Repositories
# ============================================================================


class EntitlementRepository(Protocol):
    """Versioned storage of entitlement records."""

    async def get(self, user_id: str, product_id: str) -> EntitlementRecord | None:
        """Current record for the pair, if any."""
        ...

    async def save(self, record: EntitlementRecord, expected_version: int) -> EntitlementRecord:
        """
        Write ``record`` if the stored version still equals ``expected_version``.

        ``expected_version`` 0 means the record must not exist yet. Returns the
        record as stored, with its new version.

        Raises:
            LedgerConflictError: If another writer got there first
        """
        ...

    async def list_for_user(self, user_id: str) -> list[EntitlementRecord]:
        """All records of a user, ordered by product id."""
        ...

    async def clear_pending_change(self, user_id: str, product_id: str, version: int) -> bool:
        """
        Drop the pending change if the record is still at ``version``.

        Does not bump the version. Returns False when a newer write exists.
        """
        ...


class InMemoryEntitlementRepository:
    """Process-local repository."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], EntitlementRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str, product_id: str) -> EntitlementRecord | None:
        return self._records.get((user_id, product_id))

    async def save(self, record: EntitlementRecord, expected_version: int) -> EntitlementRecord:
        key = (record.user_id, record.product_id)
        async with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise LedgerConflictError(record.user_id, record.product_id, expected_version)
            stored = record.with_changes(version=expected_version + 1)
            self._records[key] = stored
            return stored

    async def list_for_user(self, user_id: str) -> list[EntitlementRecord]:
        return sorted(
            (r for (uid, _), r in self._records.items() if uid == user_id),
            key=lambda r: r.product_id,
        )

    async def clear_pending_change(self, user_id: str, product_id: str, version: int) -> bool:
        key = (user_id, product_id)
        async with self._lock:
            current = self._records.get(key)
            if current is None or current.version != version or current.pending_change is None:
                return False
            self._records[key] = current.with_changes(pending_change=None)
            return True


class SqlEntitlementRepository:
    """PostgreSQL repository. The version column is the compare-and-set token."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str, product_id: str) -> EntitlementRecord | None:
        async with self._session_factory() as session:
            stmt = select(EntitlementRow).where(
                EntitlementRow.user_id == user_id,
                EntitlementRow.product_id == product_id,
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        return _row_to_record(row) if row else None

    async def save(self, record: EntitlementRecord, expected_version: int) -> EntitlementRecord:
        new_version = expected_version + 1
        async with self._session_factory() as session:
            if expected_version == 0:
                session.add(
                    EntitlementRow(
                        user_id=record.user_id,
                        product_id=record.product_id,
                        product_type=record.product_type.value,
                        state=record.state.value,
                        transaction_id=record.transaction_id,
                        original_transaction_id=record.original_transaction_id,
                        purchase_date=record.purchase_date,
                        expires_date=record.expires_date,
                        last_updated=record.last_updated,
                        version=new_version,
                        pending_change=_change_value(record.pending_change),
                    )
                )
                try:
                    await session.flush()
                except IntegrityError as exc:
                    # Unique (user_id, product_id): another writer inserted first
                    await session.rollback()
                    raise LedgerConflictError(
                        record.user_id, record.product_id, expected_version
                    ) from exc
            else:
                stmt = (
                    update(EntitlementRow)
                    .where(
                        EntitlementRow.user_id == record.user_id,
                        EntitlementRow.product_id == record.product_id,
                        EntitlementRow.version == expected_version,
                    )
                    .values(
                        product_type=record.product_type.value,
                        state=record.state.value,
                        transaction_id=record.transaction_id,
                        original_transaction_id=record.original_transaction_id,
                        purchase_date=record.purchase_date,
                        expires_date=record.expires_date,
                        last_updated=record.last_updated,
                        version=new_version,
                        pending_change=_change_value(record.pending_change),
                    )
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:  # type: ignore[attr-defined]
                    await session.rollback()
                    raise LedgerConflictError(record.user_id, record.product_id, expected_version)

            await session.commit()

        return record.with_changes(version=new_version)

    async def list_for_user(self, user_id: str) -> list[EntitlementRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(EntitlementRow)
                .where(EntitlementRow.user_id == user_id)
                .order_by(EntitlementRow.product_id)
            )
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_row_to_record(row) for row in rows]

    async def clear_pending_change(self, user_id: str, product_id: str, version: int) -> bool:
        async with self._session_factory() as session:
            stmt = (
                update(EntitlementRow)
                .where(
                    EntitlementRow.user_id == user_id,
                    EntitlementRow.product_id == product_id,
                    EntitlementRow.version == version,
                    EntitlementRow.pending_change.is_not(None),
                )
                .values(pending_change=None)
            )
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]


def _change_value(change: ChangeType | None) -> str | None:
    return change.value if change is not None else None


def _row_to_record(row: EntitlementRow) -> EntitlementRecord:
    """Convert ORM row to domain model."""
    return EntitlementRecord(
        user_id=row.user_id,
        product_id=row.product_id,
        product_type=ProductType(row.product_type),
        state=EntitlementState(row.state),
        transaction_id=row.transaction_id,
        original_transaction_id=row.original_transaction_id,
        purchase_date=row.purchase_date,
        expires_date=row.expires_date,
        last_updated=row.last_updated,
        version=row.version,
        pending_change=ChangeType(row.pending_change) if row.pending_change else None,
    )


# ============================================================================
# Ledger
# ============================================================================


class EntitlementLedger:
    """Applies domain events to entitlement records and reports access deltas."""

    def __init__(
        self,
        repository: EntitlementRepository,
        catalog: ContentCatalog,
        max_retries: int = 5,
        clock: Clock = utc_now,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            repository: Versioned record storage
            catalog: Product -> content id mapping used to build deltas
            max_retries: Compare-and-set attempts before giving up
            clock: Source of "now" for derived status and timestamps
        """
        self._repository = repository
        self._catalog = catalog
        self._max_retries = max(1, max_retries)
        self._clock = clock
        self._locks = KeyedLocks()

    async def apply(
        self,
        user_id: str,
        event: Granted | Renewed | Revoked | Expired | Unrecognized,
        transaction: TransactionInfo,
    ) -> LedgerDelta:
        """
        Apply one event for one user and report what to announce.

        Access gained announces an unlock, access lost a revoke. A written
        refund always announces a revoke, and so does an expiry of a record
        that was granted, even when its derived status had already lapsed.
        A change still pending from an earlier write is announced again,
        matching the access the record gives now.

        Unrecognized events and events that do not apply to the product type
        leave the record untouched.

        Raises:
            LedgerConflictError: If every compare-and-set attempt lost a race
        """
        product_id = transaction.product_id
        content_ids = await self._catalog.content_ids_for_product(product_id)

        async with self._locks.hold((user_id, product_id)):
            for attempt in range(1, self._max_retries + 1):
                now = self._clock()
                current = await self._repository.get(user_id, product_id)
                updated = self._next_record(current, user_id, event, transaction, now)
                if updated is None:
                    change = _carried_change(current, current, now)
                    return _delta(user_id, transaction, current, None, content_ids, now, change)

                change = _announced_change(event, current, updated, now)
                try:
                    written = await self._repository.save(
                        updated.with_changes(pending_change=change),
                        expected_version=current.version if current else 0,
                    )
                except LedgerConflictError:
                    metrics.ledger_conflicts_total.inc()
                    logger.warning(
                        "ledger_conflict_retry",
                        user_id=user_id,
                        product_id=product_id,
                        attempt=attempt,
                    )
                    continue

                metrics.ledger_mutations_total.labels(event_kind=type(event).__name__.lower()).inc()
                delta = _delta(user_id, transaction, current, written, content_ids, now, change)
                logger.info(
                    "ledger_applied",
                    user_id=user_id,
                    product_id=product_id,
                    event_kind=type(event).__name__,
                    previous_status=delta.previous_status.value if delta.previous_status else None,
                    current_status=delta.current_status.value,
                    change=change.value if change else None,
                    version=written.version,
                )
                return delta

        raise LedgerConflictError(user_id, product_id, current.version if current else 0)

    async def acknowledge(self, delta: LedgerDelta) -> bool:
        """
        Record that the change log holds the change ``delta`` announced.

        Returns False when there was nothing pending or a newer write has
        taken over; that write carries the pending change itself.
        """
        if delta.pending_version is None:
            return False
        cleared = await self._repository.clear_pending_change(
            delta.user_id, delta.product_id, delta.pending_version
        )
        if cleared:
            logger.debug(
                "ledger_change_acknowledged",
                user_id=delta.user_id,
                product_id=delta.product_id,
                version=delta.pending_version,
            )
        return cleared

    def _next_record(
        self,
        current: EntitlementRecord | None,
        user_id: str,
        event: Granted | Renewed | Revoked | Expired | Unrecognized,
        transaction: TransactionInfo,
        now: datetime,
    ) -> EntitlementRecord | None:
        """The record to write for ``event``, or None to leave the ledger alone."""
        if isinstance(event, Unrecognized):
            return None

        if isinstance(event, (Granted, Renewed)):
            state = EntitlementState.GRANTED
        elif isinstance(event, Revoked):
            # Consumables are used up on delivery; a refund does not take them back
            if transaction.product_type is ProductType.CONSUMABLE:
                return None
            state = EntitlementState.REVOKED
        else:
            if not transaction.product_type.is_subscription:
                return None
            state = EntitlementState.EXPIRED

        if current is None:
            return EntitlementRecord(
                user_id=user_id,
                product_id=transaction.product_id,
                product_type=transaction.product_type,
                state=state,
                transaction_id=transaction.transaction_id,
                original_transaction_id=transaction.original_transaction_id,
                purchase_date=transaction.purchase_date,
                expires_date=transaction.expires_date,
                last_updated=now,
            )

        return current.with_changes(
            product_type=transaction.product_type,
            state=state,
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            purchase_date=transaction.purchase_date,
            expires_date=transaction.expires_date,
            last_updated=now,
        )

    async def get_record(self, user_id: str, product_id: str) -> EntitlementRecord | None:
        """Raw record for one pair."""
        return await self._repository.get(user_id, product_id)

    async def entitlements_for(
        self, user_id: str
    ) -> list[tuple[EntitlementRecord, EntitlementStatus]]:
        """All records of a user with their status derived at the current time."""
        records = await self._repository.list_for_user(user_id)
        now = self._clock()
        return [(record, _safe_status(record, now)) for record in records]

    async def has_content_access(self, user_id: str, content_id: str) -> bool:
        """
        True if any active entitlement of the user unlocks ``content_id``.

        Any failure while reading answers False: access is never granted on
        an error path.
        """
        try:
            records = await self._repository.list_for_user(user_id)
            now = self._clock()
            for record in records:
                if _safe_status(record, now) is not EntitlementStatus.ACTIVE:
                    continue
                if content_id in await self._catalog.content_ids_for_product(record.product_id):
                    return True
        except Exception:
            metrics.record_error("access_lookup_failed", "has_content_access")
            logger.exception("content_access_lookup_failed", user_id=user_id, content_id=content_id)
        return False


def _safe_status(record: EntitlementRecord, now: datetime) -> EntitlementStatus:
    """Derived status, falling back to EXPIRED when the record cannot be evaluated."""
    try:
        return record.status_at(now)
    except (TypeError, ValueError):
        logger.exception(
            "entitlement_status_unreadable",
            user_id=record.user_id,
            product_id=record.product_id,
        )
        return EntitlementStatus.EXPIRED


def _has_access(record: EntitlementRecord | None, now: datetime) -> bool:
    return record is not None and _safe_status(record, now) is EntitlementStatus.ACTIVE


def _carried_change(
    before: EntitlementRecord | None, after: EntitlementRecord | None, now: datetime
) -> ChangeType | None:
    """Re-announce an unconfirmed change in terms of the access ``after`` gives."""
    if before is None or before.pending_change is None:
        return None
    return ChangeType.UNLOCK if _has_access(after, now) else ChangeType.REVOKE


def _announced_change(
    event: Granted | Renewed | Revoked | Expired | Unrecognized,
    before: EntitlementRecord | None,
    after: EntitlementRecord,
    now: datetime,
) -> ChangeType | None:
    had_access = _has_access(before, now)
    has_access = _has_access(after, now)

    if has_access and not had_access:
        return ChangeType.UNLOCK
    if had_access and not has_access:
        return ChangeType.REVOKE
    if isinstance(event, Revoked):
        return ChangeType.REVOKE
    if (
        isinstance(event, Expired)
        and before is not None
        and before.state is EntitlementState.GRANTED
    ):
        return ChangeType.REVOKE
    return _carried_change(before, after, now)


def _delta(
    user_id: str,
    transaction: TransactionInfo,
    before: EntitlementRecord | None,
    after: EntitlementRecord | None,
    content_ids: frozenset[str],
    now: datetime,
    change: ChangeType | None,
) -> LedgerDelta:
    previous_status = _safe_status(before, now) if before is not None else None
    result = after if after is not None else before
    current_status = _safe_status(result, now) if result is not None else EntitlementStatus.EXPIRED

    return LedgerDelta(
        user_id=user_id,
        product_id=transaction.product_id,
        transaction_id=transaction.transaction_id,
        previous_status=previous_status,
        current_status=current_status,
        added_content_ids=content_ids if change is ChangeType.UNLOCK else frozenset(),
        removed_content_ids=content_ids if change is ChangeType.REVOKE else frozenset(),
        record=after,
        applied_at=now,
        pending_version=result.version if change is not None and result is not None else None,
    )
