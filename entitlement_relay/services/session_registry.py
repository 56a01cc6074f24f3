"""
Session Registry - Live socket sessions per user.

A user may hold any number of sessions (one per device or tab). Broadcasts
go to every session of the user; a session whose send fails or times out is
evicted. A periodic sweep sends heartbeats and evicts sessions that have not
been heard from within the heartbeat timeout, so dead sockets do not pile up.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from fastapi import WebSocket
from structlog import get_logger

from entitlement_relay.models.api import StreamMessage
from entitlement_relay.models.domain import Clock, utc_now
from entitlement_relay.observability.metrics import metrics

logger = get_logger(__name__)


class LiveSession(Protocol):
    """One connected client."""

    session_id: str
    last_seen: float  # Monotonic seconds of the last inbound frame

    async def send(self, message: StreamMessage) -> None:
        """Deliver one message. Raises on a broken connection."""
        ...

    async def close(self) -> None:
        """Close the underlying connection, ignoring errors."""
        ...


class WebSocketSession:
    """LiveSession backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, monotonic: Callable[[], float] = time.monotonic) -> None:
        self.session_id = uuid.uuid4().hex
        self._websocket = websocket
        self._monotonic = monotonic
        self.last_seen = monotonic()

    def touch(self) -> None:
        """Record an inbound frame (pong or any client message)."""
        self.last_seen = self._monotonic()

    async def send(self, message: StreamMessage) -> None:
        await self._websocket.send_json(message.to_wire())

    async def close(self) -> None:
        try:
            await self._websocket.close()
        except (RuntimeError, OSError):
            # Already closed by the peer or by the server
            pass


class SessionRegistry:
    """Concurrency-safe map of user id to live sessions."""

    def __init__(
        self,
        send_timeout: float = 5.0,
        heartbeat_timeout: float = 90.0,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Clock = utc_now,
    ) -> None:
        """
        Initialize the registry.

        Args:
            send_timeout: Seconds a single send may take before the session is evicted
            heartbeat_timeout: Seconds of silence after which a session is considered dead
            monotonic: Source of monotonic seconds compared against ``last_seen``
            clock: Source of heartbeat timestamps
        """
        self._sessions: dict[str, set[LiveSession]] = {}
        self._lock = asyncio.Lock()
        self._send_timeout = send_timeout
        self._heartbeat_timeout = heartbeat_timeout
        self._monotonic = monotonic
        self._clock = clock

    async def register(self, user_id: str, session: LiveSession) -> None:
        async with self._lock:
            self._sessions.setdefault(user_id, set()).add(session)
        metrics.live_sessions.inc()
        logger.info("session_registered", user_id=user_id, session_id=session.session_id)

    async def unregister(self, user_id: str, session: LiveSession) -> bool:
        """Remove a session. Returns False if it was already gone."""
        async with self._lock:
            sessions = self._sessions.get(user_id)
            if sessions is None or session not in sessions:
                return False
            sessions.discard(session)
            if not sessions:
                del self._sessions[user_id]
        metrics.live_sessions.dec()
        logger.info("session_unregistered", user_id=user_id, session_id=session.session_id)
        return True

    def session_count(self, user_id: str | None = None) -> int:
        """Sessions of one user, or of all users."""
        if user_id is not None:
            return len(self._sessions.get(user_id, ()))
        return sum(len(sessions) for sessions in self._sessions.values())

    async def broadcast(self, user_id: str, message: StreamMessage) -> int:
        """
        Send ``message`` to every session of ``user_id``.

        Returns:
            Number of sessions that received the message. Zero when the user
            has no sessions.
        """
        async with self._lock:
            sessions = list(self._sessions.get(user_id, ()))
        if not sessions:
            return 0

        results = await asyncio.gather(
            *(self._send(user_id, session, message) for session in sessions)
        )
        return sum(1 for delivered in results if delivered)

    async def sweep(self) -> int:
        """
        Heartbeat every session and evict the silent ones.

        Returns:
            Number of sessions evicted
        """
        async with self._lock:
            snapshot = [
                (user_id, session)
                for user_id, sessions in self._sessions.items()
                for session in sessions
            ]

        now = self._monotonic()
        evicted = 0
        sends = []
        for user_id, session in snapshot:
            if now - session.last_seen > self._heartbeat_timeout:
                logger.info(
                    "session_heartbeat_timeout",
                    user_id=user_id,
                    session_id=session.session_id,
                )
                await self._evict(user_id, session)
                evicted += 1
                continue
            heartbeat = StreamMessage(type="heartbeat", user_id=user_id, timestamp=self._clock())
            sends.append(self._send(user_id, session, heartbeat))

        results = await asyncio.gather(*sends)
        evicted += sum(1 for delivered in results if not delivered)
        return evicted

    async def run_heartbeat(self, interval: float) -> None:
        """Sweep forever every ``interval`` seconds. Cancel to stop."""
        logger.info("heartbeat_started", interval=interval)
        while True:
            await asyncio.sleep(interval)
            try:
                evicted = await self.sweep()
            except Exception:
                logger.exception("heartbeat_sweep_failed")
                continue
            if evicted:
                logger.info("heartbeat_evicted_sessions", count=evicted)

    async def close_all(self) -> None:
        """Close and forget every session (shutdown)."""
        async with self._lock:
            snapshot = [
                (user_id, session)
                for user_id, sessions in self._sessions.items()
                for session in sessions
            ]
        for user_id, session in snapshot:
            await self._evict(user_id, session)

    async def _send(self, user_id: str, session: LiveSession, message: StreamMessage) -> bool:
        try:
            await asyncio.wait_for(session.send(message), timeout=self._send_timeout)
        except Exception as exc:
            logger.warning(
                "session_send_failed",
                user_id=user_id,
                session_id=session.session_id,
                message_type=message.type,
                error=str(exc) or type(exc).__name__,
            )
            await self._evict(user_id, session)
            return False
        return True

    async def _evict(self, user_id: str, session: LiveSession) -> None:
        if await self.unregister(user_id, session):
            await session.close()
