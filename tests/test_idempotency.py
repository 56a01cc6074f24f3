"""
Tests for the idempotency stores.

Exactly one concurrent claim wins; completed marks block forever; stale
in-flight marks can be taken over.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from entitlement_relay.models.domain import ClaimResult, MarkState
from entitlement_relay.services.idempotency import InMemoryIdempotencyStore, SqlIdempotencyStore
from tests.conftest import MutableClock


@pytest.fixture
def store(clock: MutableClock) -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(stale_after=timedelta(minutes=5), clock=clock)


class TestInMemoryIdempotencyStore:
    """Claim / complete / release lifecycle."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, store: InMemoryIdempotencyStore):
        assert await store.claim("n-1") is ClaimResult.CLAIMED
        assert await store.claim("n-1") is ClaimResult.ALREADY_PROCESSED

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, store: InMemoryIdempotencyStore):
        results = await asyncio.gather(*(store.claim("n-1") for _ in range(20)))

        assert results.count(ClaimResult.CLAIMED) == 1
        assert results.count(ClaimResult.ALREADY_PROCESSED) == 19

    @pytest.mark.asyncio
    async def test_completed_mark_never_expires(
        self, store: InMemoryIdempotencyStore, clock: MutableClock
    ):
        await store.claim("n-1")
        await store.complete("n-1")
        completed_at = clock.now
        clock.advance(days=365)

        assert await store.claim("n-1") is ClaimResult.ALREADY_PROCESSED
        mark = await store.get("n-1")
        assert mark is not None
        assert mark.state is MarkState.COMPLETED
        assert mark.processed_at == completed_at

    @pytest.mark.asyncio
    async def test_release_allows_reclaim(self, store: InMemoryIdempotencyStore):
        await store.claim("n-1")
        await store.release("n-1")

        assert await store.get("n-1") is None
        assert await store.claim("n-1") is ClaimResult.CLAIMED

    @pytest.mark.asyncio
    async def test_release_does_not_drop_completed_mark(self, store: InMemoryIdempotencyStore):
        await store.claim("n-1")
        await store.complete("n-1")
        await store.release("n-1")

        assert await store.claim("n-1") is ClaimResult.ALREADY_PROCESSED

    @pytest.mark.asyncio
    async def test_stale_processing_mark_is_reclaimable(
        self, store: InMemoryIdempotencyStore, clock: MutableClock
    ):
        await store.claim("n-1")
        clock.advance(minutes=4)
        assert await store.claim("n-1") is ClaimResult.ALREADY_PROCESSED

        clock.advance(minutes=1)
        assert await store.claim("n-1") is ClaimResult.CLAIMED
        mark = await store.get("n-1")
        assert mark is not None
        assert mark.claimed_at == clock.now


# ============================================================================
# SQL store (mocked session)
# ============================================================================


def _session_factory(session: AsyncMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


@pytest.fixture
def db_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


class TestSqlIdempotencyStore:
    """Insert is the claim; IntegrityError falls through to the stale takeover."""

    @pytest.mark.asyncio
    async def test_insert_claims(self, db_session: AsyncMock, clock: MutableClock):
        store = SqlIdempotencyStore(_session_factory(db_session), timedelta(minutes=5), clock)

        assert await store.claim("n-1") is ClaimResult.CLAIMED
        db_session.add.assert_called_once()
        db_session.commit.assert_awaited_once()
        db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_insert_with_fresh_mark(
        self, db_session: AsyncMock, clock: MutableClock
    ):
        db_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        db_session.execute.return_value = MagicMock(rowcount=0)
        store = SqlIdempotencyStore(_session_factory(db_session), timedelta(minutes=5), clock)

        assert await store.claim("n-1") is ClaimResult.ALREADY_PROCESSED
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_insert_with_stale_mark(
        self, db_session: AsyncMock, clock: MutableClock
    ):
        db_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        db_session.execute.return_value = MagicMock(rowcount=1)
        store = SqlIdempotencyStore(_session_factory(db_session), timedelta(minutes=5), clock)

        assert await store.claim("n-1") is ClaimResult.CLAIMED

    @pytest.mark.asyncio
    async def test_get_missing(self, db_session: AsyncMock, clock: MutableClock):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        db_session.execute.return_value = result
        store = SqlIdempotencyStore(_session_factory(db_session), timedelta(minutes=5), clock)

        assert await store.get("n-1") is None
