"""
End-to-end tests for NotificationPipeline over the in-memory container.

Notifications are signed by the test authority and go through real
verification, parsing, idempotency, ledger and fan-out.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from entitlement_relay.config import Settings
from entitlement_relay.exceptions import (
    MalformedEnvelopeError,
    UnsupportedPayloadVersionError,
    UntrustedCertificateError,
)
from entitlement_relay.models.domain import (
    ChangeType,
    EntitlementStatus,
    MarkState,
    ProcessingResult,
)
from entitlement_relay.services.container import ServiceContainer, build_container
from entitlement_relay.services.content_catalog import StaticContentCatalog
from tests.conftest import (
    ALBUM_PRODUCT,
    SUBSCRIPTION_PRODUCT,
    FakeCrm,
    FakePushGateway,
    FakeSession,
    TestAuthority,
    envelope,
    notification_payload,
    signed_notification,
    transaction_payload,
)

LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)


async def _changes(container: ServiceContainer, user_id: str = "user-1"):
    return await container.change_log.query(user_id, LONG_AGO).to_list()


class TestProcess:
    """Happy paths."""

    @pytest.mark.asyncio
    async def test_subscription_purchase_unlocks_content(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        session = FakeSession()
        await container.sessions.register("user-1", session)
        signed = signed_notification(authority, "SUBSCRIBED", subtype="INITIAL_BUY")

        outcome = await container.pipeline.process(envelope(signed))
        await container.dispatcher.drain()

        assert outcome.result is ProcessingResult.PROCESSED
        assert outcome.delta is not None
        assert outcome.delta.added_content_ids == frozenset({"library", "offline-mode"})
        assert await container.ledger.has_content_access("user-1", "library") is True
        assert [e.content_id for e in await _changes(container)] == ["library", "offline-mode"]
        assert [m.type for m in session.sent] == ["unlock"]
        mark = await container.idempotency.get(outcome.notification_id)
        assert mark is not None
        assert mark.state is MarkState.COMPLETED

    @pytest.mark.asyncio
    async def test_purchase_then_refund(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        await container.pipeline.process(
            envelope(
                signed_notification(
                    authority,
                    "ONE_TIME_CHARGE",
                    product_id=ALBUM_PRODUCT,
                    product_type="Non-Consumable",
                )
            )
        )
        await container.pipeline.process(
            envelope(
                signed_notification(
                    authority, "REFUND", product_id=ALBUM_PRODUCT, product_type="Non-Consumable"
                )
            )
        )

        entries = await _changes(container)
        assert [(e.change_type, e.content_id) for e in entries] == [
            (ChangeType.UNLOCK, "album-spring"),
            (ChangeType.REVOKE, "album-spring"),
        ]
        [(_, status)] = await container.ledger.entitlements_for("user-1")
        assert status is EntitlementStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_expired_subscription_reads_expired(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        """Apple's late delivery of a purchase whose period already ended."""
        now = datetime.now(UTC)
        signed = signed_notification(
            authority,
            "SUBSCRIBED",
            purchase_date=now - timedelta(days=31),
            expires_date=now - timedelta(days=1),
        )

        outcome = await container.pipeline.process(envelope(signed))

        assert outcome.result is ProcessingResult.PROCESSED
        assert outcome.delta is not None
        assert outcome.delta.current_status is EntitlementStatus.EXPIRED
        assert await _changes(container) == []

    @pytest.mark.asyncio
    async def test_refund_of_lapsed_subscription_logs_revoke(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        purchased = datetime.now(UTC) - timedelta(days=40)
        await container.pipeline.process(
            envelope(signed_notification(authority, "SUBSCRIBED", purchase_date=purchased))
        )

        await container.pipeline.process(
            envelope(signed_notification(authority, "REFUND", purchase_date=purchased))
        )

        entries = await _changes(container)
        assert [(e.change_type, e.content_id) for e in entries] == [
            (ChangeType.REVOKE, "library"),
            (ChangeType.REVOKE, "offline-mode"),
        ]
        [(_, status)] = await container.ledger.entitlements_for("user-1")
        assert status is EntitlementStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_crm_job_enqueued(
        self, container: ServiceContainer, authority: TestAuthority, crm: FakeCrm
    ):
        await container.pipeline.process(envelope(signed_notification(authority, "SUBSCRIBED")))

        assert container.crm_worker is not None
        assert await container.crm_worker.run_once() == 1
        assert [user_id for user_id, _ in crm.calls] == ["user-1"]


class TestIdempotentProcessing:
    """Redeliveries never apply twice."""

    @pytest.mark.asyncio
    async def test_redelivered_three_times(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        signed = signed_notification(authority, "SUBSCRIBED", notification_id="notif-dup")

        results = [
            (await container.pipeline.process(envelope(signed))).result for _ in range(3)
        ]

        assert results == [
            ProcessingResult.PROCESSED,
            ProcessingResult.DUPLICATE,
            ProcessingResult.DUPLICATE,
        ]
        assert len(await _changes(container)) == 2
        record = await container.ledger.get_record("user-1", "com.example.reader.premium.monthly")
        assert record is not None
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        signed = signed_notification(authority, "SUBSCRIBED", notification_id="notif-race")

        outcomes = await asyncio.gather(
            *(container.pipeline.process(envelope(signed)) for _ in range(5))
        )

        results = [o.result for o in outcomes]
        assert results.count(ProcessingResult.PROCESSED) == 1
        assert results.count(ProcessingResult.DUPLICATE) == 4
        assert len(await _changes(container)) == 2

    @pytest.mark.asyncio
    async def test_failure_releases_claim_for_retry(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        real_append = container.change_log.append
        calls = {"n": 0}

        async def flaky_append(change):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("database down")
            return await real_append(change)

        container.change_log.append = flaky_append  # type: ignore[method-assign]
        signed = signed_notification(authority, "SUBSCRIBED", notification_id="notif-retry")

        with pytest.raises(ConnectionError):
            await container.pipeline.process(envelope(signed))
        assert await container.idempotency.get("notif-retry") is None
        assert await _changes(container) == []

        outcome = await container.pipeline.process(envelope(signed))

        assert outcome.result is ProcessingResult.PROCESSED
        entries = await _changes(container)
        assert [(e.change_type, e.content_id) for e in entries] == [
            (ChangeType.UNLOCK, "library"),
            (ChangeType.UNLOCK, "offline-mode"),
        ]
        record = await container.ledger.get_record("user-1", SUBSCRIPTION_PRODUCT)
        assert record is not None
        assert record.pending_change is None

    @pytest.mark.asyncio
    async def test_acknowledge_failure_still_processes(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        container.ledger.acknowledge = AsyncMock(  # type: ignore[method-assign]
            side_effect=ConnectionError("database down")
        )

        outcome = await container.pipeline.process(
            envelope(signed_notification(authority, "SUBSCRIBED"))
        )

        assert outcome.result is ProcessingResult.PROCESSED
        record = await container.ledger.get_record("user-1", SUBSCRIPTION_PRODUCT)
        assert record is not None
        assert record.pending_change is ChangeType.UNLOCK


class TestNonActionable:
    """Acknowledged without touching the ledger."""

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored_and_remembered(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        signed = signed_notification(authority, "BRAND_NEW_TYPE", notification_id="notif-new")

        first = await container.pipeline.process(envelope(signed))
        second = await container.pipeline.process(envelope(signed))

        assert first.result is ProcessingResult.IGNORED
        assert first.detail == "unknown notification type"
        assert second.result is ProcessingResult.DUPLICATE
        assert await container.ledger.entitlements_for("user-1") == []

    @pytest.mark.asyncio
    async def test_test_notification(self, container: ServiceContainer, authority: TestAuthority):
        outcome = await container.pipeline.process(
            envelope(authority.sign(notification_payload("TEST")))
        )

        assert outcome.result is ProcessingResult.IGNORED

    @pytest.mark.asyncio
    async def test_transaction_without_user(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        outcome = await container.pipeline.process(
            envelope(signed_notification(authority, "SUBSCRIBED", user_id=None))
        )

        assert outcome.result is ProcessingResult.IGNORED
        assert outcome.detail == "no appAccountToken on transaction"


class TestRejections:
    """Rejected envelopes leave no trace."""

    @pytest.mark.asyncio
    async def test_untrusted_chain(
        self,
        container: ServiceContainer,
        rogue_authority: TestAuthority,
    ):
        signed = signed_notification(rogue_authority, "SUBSCRIBED", notification_id="notif-rogue")

        with pytest.raises(UntrustedCertificateError):
            await container.pipeline.process(envelope(signed))

        assert await container.idempotency.get("notif-rogue") is None
        assert await container.ledger.entitlements_for("user-1") == []

    @pytest.mark.asyncio
    async def test_unsupported_version(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        signed = authority.sign(
            notification_payload(
                "SUBSCRIBED",
                signed_transaction=authority.sign(transaction_payload()),
                notification_id="notif-v3",
                version="3.0",
            )
        )

        with pytest.raises(UnsupportedPayloadVersionError):
            await container.pipeline.process(envelope(signed))

        assert await container.idempotency.get("notif-v3") is None

    @pytest.mark.asyncio
    async def test_garbage(self, container: ServiceContainer):
        with pytest.raises(MalformedEnvelopeError):
            await container.pipeline.process(envelope("definitely.not.a-jws"))


class TestCourseUnlock:
    """A one-time course purchase reaches every channel."""

    @pytest.mark.asyncio
    async def test_purchase_reaches_log_socket_and_push(
        self,
        test_settings: Settings,
        authority: TestAuthority,
        push_gateway: FakePushGateway,
        crm: FakeCrm,
    ):
        container = build_container(
            test_settings,
            verifier=authority.verifier(),
            catalog=StaticContentCatalog({"course_123": ["course_123"]}),
            push_gateway=push_gateway,
            crm=crm,
        )
        session = FakeSession()
        await container.sessions.register("user-1", session)
        await container.devices.register("user-1", "device-a", "ios")

        outcome = await container.pipeline.process(
            envelope(
                signed_notification(
                    authority, "PURCHASE", product_id="course_123", product_type="Non-Consumable"
                )
            )
        )
        await container.dispatcher.drain()

        assert outcome.result is ProcessingResult.PROCESSED
        entries = await _changes(container)
        assert [(e.change_type, e.content_id) for e in entries] == [
            (ChangeType.UNLOCK, "course_123")
        ]
        assert [(m.type, m.content_ids) for m in session.sent] == [("unlock", ["course_123"])]
        assert [token for token, _ in push_gateway.sent] == ["device-a"]
        assert await container.ledger.has_content_access("user-1", "course_123") is True


class TestShieldedProcessing:
    """Webhook processing outlives a caller that stops waiting."""

    @pytest.mark.asyncio
    async def test_completes_after_caller_cancelled(
        self, container: ServiceContainer, authority: TestAuthority
    ):
        signed = signed_notification(authority, "SUBSCRIBED", notification_id="notif-shield")
        caller = asyncio.create_task(container.pipeline.process_shielded(envelope(signed)))
        await asyncio.sleep(0)
        assert container.pipeline.inflight == 1

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await container.pipeline.drain()

        assert container.pipeline.inflight == 0
        assert await container.ledger.has_content_access("user-1", "library") is True
        mark = await container.idempotency.get("notif-shield")
        assert mark is not None
        assert mark.state is MarkState.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_task_is_released(self, container: ServiceContainer):
        with pytest.raises(MalformedEnvelopeError):
            await container.pipeline.process_shielded(envelope("definitely.not.a-jws"))

        await container.pipeline.drain()
        assert container.pipeline.inflight == 0
