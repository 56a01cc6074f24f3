"""
Hypothesis Property-Based Tests for EntitlementLedger.

Replaying the deltas of any event sequence must reproduce exactly the
access the ledger reports at the end, whether or not each change is
acknowledged. Once acknowledged, a change is never announced twice.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from entitlement_relay.models.domain import (
    EntitlementStatus,
    Expired,
    Granted,
    ProductType,
    Renewed,
    Revoked,
)
from entitlement_relay.services.content_catalog import StaticContentCatalog
from entitlement_relay.services.ledger import EntitlementLedger, InMemoryEntitlementRepository
from tests.conftest import CATALOG, MutableClock, make_event, make_transaction

# ============================================================================
# Hypothesis Strategies
# ============================================================================

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

products = st.sampled_from(
    [
        ("com.example.reader.premium.monthly", ProductType.AUTO_RENEWABLE),
        ("com.example.reader.album.spring", ProductType.NON_CONSUMABLE),
        ("com.example.reader.coins.100", ProductType.CONSUMABLE),
    ]
)
event_kinds = st.sampled_from([Granted, Renewed, Revoked, Expired])
expiry_offsets = st.integers(min_value=-48, max_value=48)


@st.composite
def ledger_steps(draw):
    """One event: (kind, product_id, product_type, expiry offset in hours)."""
    product_id, product_type = draw(products)
    return draw(event_kinds), product_id, product_type, draw(expiry_offsets)


async def _replay(steps, acknowledge: bool = True) -> tuple[set[str], EntitlementLedger]:
    clock = MutableClock(NOW)
    ledger = EntitlementLedger(InMemoryEntitlementRepository(), StaticContentCatalog(CATALOG), clock=clock)
    access: set[str] = set()

    for index, (kind, product_id, product_type, offset) in enumerate(steps):
        expires = NOW + timedelta(hours=offset) if product_type is ProductType.AUTO_RENEWABLE else None
        tx = make_transaction(
            product_id=product_id,
            product_type=product_type,
            transaction_id=f"tx-{index}",
            purchase_date=NOW - timedelta(days=60),
            expires_date=expires,
        )
        delta = await ledger.apply("user-1", make_event(kind, tx), tx)

        assert not (delta.added_content_ids and delta.removed_content_ids)
        if acknowledge:
            assert delta.added_content_ids.isdisjoint(access)
            # Refunds and expiries revoke even what had already lapsed
            if kind not in (Revoked, Expired):
                assert delta.removed_content_ids <= access
            await ledger.acknowledge(delta)
        access |= delta.added_content_ids
        access -= delta.removed_content_ids

    return access, ledger


class TestLedgerReplayProperties:
    """Deltas are a faithful changelog of access."""

    @given(st.lists(ledger_steps(), min_size=1, max_size=25), st.booleans())
    @settings(max_examples=100, deadline=None)
    def test_replayed_deltas_match_final_access(self, steps, acknowledge):
        access, ledger = asyncio.run(_replay(steps, acknowledge))

        async def reported() -> set[str]:
            result: set[str] = set()
            for content_ids in CATALOG.values():
                for content_id in content_ids:
                    if await ledger.has_content_access("user-1", content_id):
                        result.add(content_id)
            return result

        assert asyncio.run(reported()) == access

    @given(st.lists(ledger_steps(), min_size=1, max_size=25))
    @settings(max_examples=50, deadline=None)
    def test_consumables_stay_granted(self, steps):
        access, ledger = asyncio.run(_replay(steps))

        async def coin_status():
            entries = await ledger.entitlements_for("user-1")
            return [
                status
                for record, status in entries
                if record.product_type is ProductType.CONSUMABLE
            ]

        for status in asyncio.run(coin_status()):
            assert status is EntitlementStatus.ACTIVE
