"""
API Routes - Webhook, entitlement reads, device registration and health.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from structlog import get_logger

from entitlement_relay.api.dependencies import (
    get_change_log,
    get_container,
    get_devices,
    get_ledger,
    get_pipeline,
)
from entitlement_relay.exceptions import NotificationRejectedError
from entitlement_relay.models.api import (
    ChangeItem,
    ChangesResponse,
    ContentAccessResponse,
    DeviceRegistrationRequest,
    DeviceRegistrationResponse,
    EntitlementItem,
    EntitlementsResponse,
    ErrorDetail,
    HealthResponse,
    PurchaseNotificationRequest,
    PurchaseNotificationResponse,
)
from entitlement_relay.models.domain import NotificationEnvelope, utc_now
from entitlement_relay.services.change_log import ChangeLogStore
from entitlement_relay.services.container import ServiceContainer
from entitlement_relay.services.devices import DeviceRegistry
from entitlement_relay.services.ledger import EntitlementLedger
from entitlement_relay.services.pipeline import NotificationPipeline

logger = get_logger(__name__)

router = APIRouter()

WEBHOOK_PATH = "/webhooks/purchase-notifications"


# =============================================================================
# Webhook
# =============================================================================


@router.post(WEBHOOK_PATH, response_model=PurchaseNotificationResponse)
async def receive_purchase_notification(
    request: PurchaseNotificationRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> PurchaseNotificationResponse:
    """
    Receive an App Store Server Notification v2.

    Answers 200 for processed notifications, duplicates and notification
    types that do not affect entitlements. Answers 400 when the payload
    cannot be verified; nothing is recorded in that case.

    The pipeline is shielded from client disconnects: once a notification
    is claimed it runs to completion even if Apple stops waiting.
    """
    envelope = NotificationEnvelope(signed_payload=request.signed_payload, received_at=utc_now())

    try:
        await pipeline.process_shielded(envelope)
    except NotificationRejectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorDetail(error=exc.code, message=exc.message).model_dump(),
        ) from exc

    return PurchaseNotificationResponse(timestamp=utc_now())


# =============================================================================
# Entitlement reads
# =============================================================================


@router.get("/users/{user_id}/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(
    user_id: str,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> EntitlementsResponse:
    """Current entitlements of a user, each with its computed status."""
    entries = await ledger.entitlements_for(user_id)
    return EntitlementsResponse(
        user_id=user_id,
        entitlements=[EntitlementItem.from_record(record, status) for record, status in entries],
    )


@router.get("/users/{user_id}/entitlements/changes", response_model=ChangesResponse)
async def get_entitlement_changes(
    user_id: str,
    since: datetime = Query(..., description="Return changes strictly after this instant"),
    change_log: ChangeLogStore = Depends(get_change_log),
) -> ChangesResponse:
    """
    Polling fallback for clients that missed push and socket messages.

    ``lastUpdated`` is the timestamp of the newest change returned, or
    ``since`` when there is none, so clients can pass it straight back.
    """
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    entries = await change_log.query(user_id, since).to_list()
    return ChangesResponse(
        has_changes=bool(entries),
        last_updated=entries[-1].changed_at if entries else since,
        changes=[ChangeItem.from_entry(entry) for entry in entries],
    )


@router.get(
    "/users/{user_id}/content/{content_id}/access", response_model=ContentAccessResponse
)
async def check_content_access(
    user_id: str,
    content_id: str,
    ledger: EntitlementLedger = Depends(get_ledger),
) -> ContentAccessResponse:
    """Whether any active entitlement of the user unlocks the content item."""
    has_access = await ledger.has_content_access(user_id, content_id)
    return ContentAccessResponse(user_id=user_id, content_id=content_id, has_access=has_access)


# =============================================================================
# Devices
# =============================================================================


@router.post(
    "/users/{user_id}/devices",
    response_model=DeviceRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_device(
    user_id: str,
    request: DeviceRegistrationRequest,
    devices: DeviceRegistry = Depends(get_devices),
) -> DeviceRegistrationResponse:
    """Register a push device token for a user."""
    device = await devices.register(user_id, request.device_token, request.platform)
    return DeviceRegistrationResponse(
        user_id=device.user_id,
        device_token=device.device_token,
        platform=device.platform,
        registered_at=device.registered_at,
    )


@router.delete("/users/{user_id}/devices/{device_token}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_device(
    user_id: str,
    device_token: str,
    devices: DeviceRegistry = Depends(get_devices),
) -> Response:
    """Remove a push device token."""
    if not await devices.unregister(user_id, device_token):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not registered",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies storage connectivity.
    """
    try:
        await container.storage_check()
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "storage": container.storage,
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        storage=container.storage,
        timestamp=datetime.now(UTC).isoformat(),
    )
