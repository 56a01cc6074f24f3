"""
Stream Routes - Live WebSocket stream of content unlocks per user.

Clients receive a "connected" message, then unlock/revoke messages as they
happen and heartbeats from the registry's sweep. Any client frame (the text
"pong", "ping" or anything else) counts as a sign of life.
"""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from structlog import get_logger

from entitlement_relay.api.dependencies import get_ws_container
from entitlement_relay.models.api import StreamMessage
from entitlement_relay.models.domain import utc_now
from entitlement_relay.services.container import ServiceContainer
from entitlement_relay.services.session_registry import WebSocketSession

logger = get_logger(__name__)

router = APIRouter()


@router.websocket("/users/{user_id}/stream")
async def entitlement_stream(
    websocket: WebSocket,
    user_id: str,
    container: ServiceContainer = Depends(get_ws_container),
) -> None:
    """Register the socket with the session registry until it disconnects."""
    await websocket.accept()
    session = WebSocketSession(websocket)
    registry = container.sessions

    await session.send(StreamMessage(type="connected", user_id=user_id, timestamp=utc_now()))
    await registry.register(user_id, session)

    try:
        while True:
            data = await websocket.receive_text()
            session.touch()
            if data == "ping":
                await session.send(
                    StreamMessage(type="heartbeat", user_id=user_id, timestamp=utc_now())
                )
    except WebSocketDisconnect:
        logger.info("stream_disconnected", user_id=user_id, session_id=session.session_id)
    except Exception as exc:
        logger.error("stream_error", user_id=user_id, session_id=session.session_id, error=str(exc))
    finally:
        await registry.unregister(user_id, session)
