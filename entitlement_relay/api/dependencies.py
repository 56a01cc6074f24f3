"""
FastAPI Dependencies - Collaborator lookup and admin authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac

from fastapi import Depends, Header, HTTPException, Request, WebSocket, status
from structlog import get_logger

from entitlement_relay.config import settings
from entitlement_relay.exceptions import AuthenticationError
from entitlement_relay.services.change_log import ChangeLogStore
from entitlement_relay.services.container import ServiceContainer
from entitlement_relay.services.crm_sync import CrmSyncQueue
from entitlement_relay.services.devices import DeviceRegistry
from entitlement_relay.services.ledger import EntitlementLedger
from entitlement_relay.services.pipeline import NotificationPipeline

logger = get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """Container built by the application lifespan."""
    container: ServiceContainer = request.app.state.container
    return container


def get_ws_container(websocket: WebSocket) -> ServiceContainer:
    """Container lookup for WebSocket routes."""
    container: ServiceContainer = websocket.app.state.container
    return container


def get_pipeline(container: ServiceContainer = Depends(get_container)) -> NotificationPipeline:
    return container.pipeline


def get_ledger(container: ServiceContainer = Depends(get_container)) -> EntitlementLedger:
    return container.ledger


def get_change_log(container: ServiceContainer = Depends(get_container)) -> ChangeLogStore:
    return container.change_log


def get_devices(container: ServiceContainer = Depends(get_container)) -> DeviceRegistry:
    return container.devices


def get_crm_queue(container: ServiceContainer = Depends(get_container)) -> CrmSyncQueue:
    """CRM queue, or 404 when CRM sync is not configured."""
    if container.crm_queue is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="CRM sync is not configured",
        )
    return container.crm_queue


# ============================================================================
# Admin Authentication
# ============================================================================


def verify_admin_key(presented: str | None, expected: str) -> None:
    """
    Compare an admin key in constant time.

    Raises:
        AuthenticationError: If no key is configured, none was presented, or it differs
    """
    if not expected:
        raise AuthenticationError("admin API is disabled")
    if not presented:
        raise AuthenticationError("missing X-Admin-Key header")
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError("invalid admin key")


async def require_admin(
    x_admin_key: str | None = Header(None, description="Admin API key"),
) -> None:
    """
    FastAPI dependency guarding operator endpoints.

    Usage:
        @router.get("/admin/...", dependencies=[Depends(require_admin)])
    """
    try:
        verify_admin_key(x_admin_key, settings.admin_api_key)
    except AuthenticationError as exc:
        logger.warning("admin_auth_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc
