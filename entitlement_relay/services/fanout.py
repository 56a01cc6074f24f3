"""
Fan-out Dispatcher - Propagates a ledger delta to every delivery channel.

Channels and their guarantees:
- change log: awaited before dispatch returns; the poll path is the
  channel every client can rely on eventually
- CRM: durable job enqueued before dispatch returns, sent by the worker
- push and live socket: best effort, started in the background after the
  change log append so the webhook can answer without waiting on them

A failure in one live channel is logged and counted, never raised, and never
stops the other channel.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from structlog import get_logger

from entitlement_relay.models.api import StreamMessage
from entitlement_relay.models.domain import (
    ContentUnlockEvent,
    EntitlementRecord,
    LedgerDelta,
    PendingChange,
)
from entitlement_relay.observability.metrics import metrics
from entitlement_relay.services.change_log import ChangeLogStore
from entitlement_relay.services.crm_sync import CrmSyncQueue
from entitlement_relay.services.devices import DeviceRegistry
from entitlement_relay.services.push_gateway import PushGateway, PushPayload
from entitlement_relay.services.session_registry import SessionRegistry

logger = get_logger(__name__)


class FanoutDispatcher:
    """Dispatches ledger deltas to change log, CRM, push and socket channels."""

    def __init__(
        self,
        change_log: ChangeLogStore,
        sessions: SessionRegistry,
        devices: DeviceRegistry,
        push_gateway: PushGateway | None = None,
        crm_queue: CrmSyncQueue | None = None,
        push_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            change_log: Append-only change log read by polling clients
            sessions: Live socket sessions
            devices: Push device tokens per user
            push_gateway: Push transport, None disables the push channel
            crm_queue: CRM retry queue, None disables CRM sync
            push_timeout: Seconds allowed per push send
        """
        self._change_log = change_log
        self._sessions = sessions
        self._devices = devices
        self._push_gateway = push_gateway
        self._crm_queue = crm_queue
        self._push_timeout = push_timeout
        self._tasks: set[asyncio.Task[None]] = set()

    async def dispatch(self, user_id: str, delta: LedgerDelta) -> None:
        """
        Fan out one delta.

        Returns once the change log and CRM queue hold the change. Push and
        socket deliveries may still be running; see ``drain``.

        Raises:
            Exception: Whatever the change-log store raises on a failed append
        """
        if delta.record is not None and self._crm_queue is not None:
            await self._enqueue_crm(self._crm_queue, delta.record, delta)

        if delta.change_type is None:
            logger.debug("fanout_no_access_change", user_id=user_id, product_id=delta.product_id)
            return

        event = ContentUnlockEvent.from_delta(delta)
        await self._append_changes(event)
        self._spawn(self._deliver_live(event))

    @property
    def pending_deliveries(self) -> int:
        """Live deliveries still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background delivery started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _enqueue_crm(
        self, queue: CrmSyncQueue, record: EntitlementRecord, delta: LedgerDelta
    ) -> None:
        try:
            job = await queue.enqueue(record, delta.current_status)
        except Exception:
            # Ledger is already committed; a lost CRM update is reported, not raised
            metrics.record_error("crm_enqueue_failed", "fanout")
            logger.exception("crm_enqueue_failed", user_id=delta.user_id, product_id=delta.product_id)
            return
        logger.debug("crm_job_enqueued", job_id=job.job_id, user_id=delta.user_id)

    async def _append_changes(self, event: ContentUnlockEvent) -> None:
        for content_id in sorted(event.content_ids):
            await self._change_log.append(
                PendingChange(
                    user_id=event.user_id,
                    change_type=event.change_type,
                    content_id=content_id,
                    product_id=event.product_id,
                    transaction_id=event.transaction_id,
                )
            )
        logger.info(
            "change_log_updated",
            user_id=event.user_id,
            change_type=event.change_type.value,
            content_ids=sorted(event.content_ids),
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_live(self, event: ContentUnlockEvent) -> None:
        await asyncio.gather(self._broadcast(event), self._push(event))

    async def _broadcast(self, event: ContentUnlockEvent) -> None:
        try:
            delivered = await self._sessions.broadcast(event.user_id, StreamMessage.from_event(event))
        except Exception:
            metrics.record_delivery("socket", "failed")
            logger.exception("socket_broadcast_failed", user_id=event.user_id)
            return
        metrics.record_delivery("socket", "delivered" if delivered else "no_sessions")
        logger.debug("socket_broadcast_done", user_id=event.user_id, sessions=delivered)

    async def _push(self, event: ContentUnlockEvent) -> None:
        gateway = self._push_gateway
        if gateway is None:
            return
        try:
            devices = await self._devices.tokens_for(event.user_id)
        except Exception:
            metrics.record_delivery("push", "failed")
            logger.exception("push_device_lookup_failed", user_id=event.user_id)
            return
        if not devices:
            metrics.record_delivery("push", "no_devices")
            return

        payload = PushPayload.from_event(event)
        await asyncio.gather(
            *(self._push_one(gateway, event.user_id, d.device_token, payload) for d in devices)
        )

    async def _push_one(
        self, gateway: PushGateway, user_id: str, device_token: str, payload: PushPayload
    ) -> None:
        try:
            await asyncio.wait_for(
                gateway.send(device_token, payload), timeout=self._push_timeout
            )
        except Exception as exc:
            metrics.record_delivery("push", "failed")
            logger.warning(
                "push_send_failed",
                user_id=user_id,
                error=str(exc) or type(exc).__name__,
            )
            return
        metrics.record_delivery("push", "delivered")
