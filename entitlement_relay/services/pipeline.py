"""
Notification Pipeline - verify -> parse -> claim -> apply -> dispatch.

Rejections (malformed, bad signature, untrusted chain, unsupported version)
happen before the idempotency claim, so nothing is recorded for them and a
corrected redelivery is processed normally. Once a notification is claimed,
an unexpected failure releases the claim so Apple's retry can run it again.

A ledger change stays pending on its record until the change log holds it;
a redelivery after a failed append announces it again.
"""

import asyncio
import time

from structlog import get_logger

from entitlement_relay.exceptions import NotificationRejectedError
from entitlement_relay.models.domain import (
    ClaimResult,
    DomainEvent,
    LedgerDelta,
    NotificationEnvelope,
    ProcessingOutcome,
    ProcessingResult,
    Unrecognized,
)
from entitlement_relay.observability import log_context, metrics, trace_operation
from entitlement_relay.services.fanout import FanoutDispatcher
from entitlement_relay.services.idempotency import IdempotencyStore
from entitlement_relay.services.ledger import EntitlementLedger
from entitlement_relay.services.notification_decoder import NotificationDecoder
from entitlement_relay.services.notification_parser import NotificationParser

logger = get_logger(__name__)


class NotificationPipeline:
    """Processes one signed notification end to end."""

    def __init__(
        self,
        decoder: NotificationDecoder,
        parser: NotificationParser,
        idempotency: IdempotencyStore,
        ledger: EntitlementLedger,
        dispatcher: FanoutDispatcher,
    ) -> None:
        self._decoder = decoder
        self._parser = parser
        self._idempotency = idempotency
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._inflight: set[asyncio.Task[ProcessingOutcome]] = set()

    async def process_shielded(self, envelope: NotificationEnvelope) -> ProcessingOutcome:
        """
        Run ``process`` in its own task that survives cancellation of the caller.

        The webhook uses this so a sender that stops waiting does not abort a
        claimed notification half way. ``drain`` waits for such tasks.
        """
        task = asyncio.create_task(self.process(envelope))
        self._inflight.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    @property
    def inflight(self) -> int:
        """Notifications still being processed in shielded tasks."""
        return len(self._inflight)

    async def drain(self) -> None:
        """Wait for every shielded task started so far."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _task_done(self, task: asyncio.Task[ProcessingOutcome]) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, NotificationRejectedError):
            logger.warning("notification_task_failed", error=str(exc) or type(exc).__name__)

    async def process(self, envelope: NotificationEnvelope) -> ProcessingOutcome:
        """
        Run one notification through the pipeline.

        Duplicates and notifications the ledger does not act on are
        successful outcomes, not errors.

        Raises:
            NotificationRejectedError: If the envelope is rejected before any state is touched
        """
        started = time.perf_counter()
        event = await self._verify_and_parse(envelope)

        with log_context(
            notification_id=event.notification_id,
            notification_type=event.notification_type,
        ):
            claim = await self._idempotency.claim(event.notification_id)
            if claim is ClaimResult.ALREADY_PROCESSED:
                logger.info("notification_duplicate")
                metrics.record_notification(ProcessingResult.DUPLICATE.value)
                return ProcessingOutcome(
                    notification_id=event.notification_id, result=ProcessingResult.DUPLICATE
                )

            try:
                outcome = await self._apply(event)
            except Exception:
                await self._idempotency.release(event.notification_id)
                metrics.record_error("pipeline_failed", "process")
                logger.exception("notification_processing_failed")
                raise

            await self._idempotency.complete(event.notification_id)
            metrics.record_notification(outcome.result.value, time.perf_counter() - started)
            logger.info("notification_processed", result=outcome.result.value)
            return outcome

    async def _acknowledge(self, delta: LedgerDelta) -> None:
        try:
            await self._ledger.acknowledge(delta)
        except Exception:
            # Left pending; the next event for this pair announces it again
            metrics.record_error("ledger_acknowledge_failed", "process")
            logger.exception("ledger_acknowledge_failed", version=delta.pending_version)

    async def _verify_and_parse(self, envelope: NotificationEnvelope) -> DomainEvent:
        try:
            with trace_operation("notification_verify"):
                # Signature checks are CPU-bound; keep them off the event loop
                decoded, transaction = await asyncio.to_thread(self._decoder.decode, envelope)
            return self._parser.parse(decoded, transaction)
        except NotificationRejectedError as exc:
            metrics.record_rejection(exc.code)
            logger.warning("notification_rejected", error=exc.code, reason=exc.message)
            raise

    async def _apply(self, event: DomainEvent) -> ProcessingOutcome:
        if isinstance(event, Unrecognized):
            return ProcessingOutcome(
                notification_id=event.notification_id,
                result=ProcessingResult.IGNORED,
                detail=event.reason,
            )

        transaction = event.transaction
        user_id = transaction.app_account_token
        if not user_id:
            logger.warning(
                "notification_user_unresolved",
                transaction_id=transaction.transaction_id,
                product_id=transaction.product_id,
            )
            return ProcessingOutcome(
                notification_id=event.notification_id,
                result=ProcessingResult.IGNORED,
                detail="no appAccountToken on transaction",
            )

        with log_context(user_id=user_id, product_id=transaction.product_id):
            with trace_operation("ledger_apply", user_id=user_id, product_id=transaction.product_id):
                delta = await self._ledger.apply(user_id, event, transaction)
            with trace_operation("fanout_dispatch", user_id=user_id):
                await self._dispatcher.dispatch(user_id, delta)
            if delta.pending_version is not None:
                await self._acknowledge(delta)

        return ProcessingOutcome(
            notification_id=event.notification_id,
            result=ProcessingResult.PROCESSED,
            delta=delta,
        )
