"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.

Wire format uses camelCase field names (clients are mobile apps);
Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from entitlement_relay.models.domain import (
    ChangeLogEntry,
    ChangeType,
    ContentUnlockEvent,
    CrmJobState,
    CrmSyncJob,
    EntitlementRecord,
    EntitlementStatus,
)


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Webhook
# ============================================================================


class PurchaseNotificationRequest(CamelModel):
    """POST /webhooks/purchase-notifications request body."""

    signed_payload: str = Field(..., min_length=1)


class PurchaseNotificationResponse(CamelModel):
    """POST /webhooks/purchase-notifications response."""

    status: Literal["processed"] = "processed"
    timestamp: datetime


class ErrorDetail(CamelModel):
    """Machine-readable rejection detail."""

    error: str
    message: str


# ============================================================================
# Entitlements
# ============================================================================


class EntitlementItem(CamelModel):
    """One entitlement annotated with its computed status."""

    product_id: str
    status: EntitlementStatus
    transaction_id: str
    purchase_date: datetime
    expires_date: datetime | None
    last_updated: datetime

    @classmethod
    def from_record(cls, record: EntitlementRecord, status: EntitlementStatus) -> "EntitlementItem":
        """Build from a ledger record and its computed status."""
        return cls(
            product_id=record.product_id,
            status=status,
            transaction_id=record.transaction_id,
            purchase_date=record.purchase_date,
            expires_date=record.expires_date,
            last_updated=record.last_updated,
        )


class EntitlementsResponse(CamelModel):
    """GET /users/{userId}/entitlements response."""

    user_id: str
    entitlements: list[EntitlementItem]


class ChangeItem(CamelModel):
    """One change-log entry."""

    change_type: ChangeType
    content_id: str
    product_id: str
    transaction_id: str
    changed_at: datetime

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> "ChangeItem":
        """Build from a change-log entry."""
        return cls(
            change_type=entry.change_type,
            content_id=entry.content_id,
            product_id=entry.product_id,
            transaction_id=entry.transaction_id,
            changed_at=entry.changed_at,
        )


class ChangesResponse(CamelModel):
    """GET /users/{userId}/entitlements/changes response."""

    has_changes: bool
    last_updated: datetime
    changes: list[ChangeItem]


class ContentAccessResponse(CamelModel):
    """GET /users/{userId}/content/{contentId}/access response."""

    user_id: str
    content_id: str
    has_access: bool


# ============================================================================
# Devices
# ============================================================================


class DeviceRegistrationRequest(CamelModel):
    """POST /users/{userId}/devices request body."""

    device_token: str = Field(..., min_length=1, max_length=512)
    platform: Literal["ios", "android"] = "ios"


class DeviceRegistrationResponse(CamelModel):
    """POST /users/{userId}/devices response."""

    user_id: str
    device_token: str
    platform: str
    registered_at: datetime


# ============================================================================
# Live stream messages
# ============================================================================


class StreamMessage(CamelModel):
    """Message pushed over the live socket stream."""

    type: Literal["unlock", "revoke", "heartbeat", "connected"]
    user_id: str
    content_ids: list[str] = Field(default_factory=list)
    product_id: str | None = None
    transaction_id: str | None = None
    timestamp: datetime

    @classmethod
    def from_event(cls, event: ContentUnlockEvent) -> "StreamMessage":
        """Build an unlock/revoke message from a fan-out event."""
        return cls(
            type=event.change_type.value,
            user_id=event.user_id,
            content_ids=sorted(event.content_ids),
            product_id=event.product_id,
            transaction_id=event.transaction_id,
            timestamp=event.unlocked_at,
        )

    def to_wire(self) -> dict[str, object]:
        """JSON-ready representation with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# Admin
# ============================================================================


class CrmJobItem(CamelModel):
    """CRM sync job as shown to operators."""

    job_id: int
    user_id: str
    product_id: str
    status: EntitlementStatus
    attempts: int
    state: CrmJobState
    next_attempt_at: datetime
    last_error: str | None

    @classmethod
    def from_job(cls, job: CrmSyncJob) -> "CrmJobItem":
        """Build from a queued job."""
        return cls(
            job_id=job.job_id,
            user_id=job.user_id,
            product_id=job.product_id,
            status=job.status,
            attempts=job.attempts,
            state=job.state,
            next_attempt_at=job.next_attempt_at,
            last_error=job.last_error,
        )


class CrmJobListResponse(CamelModel):
    """GET /admin/crm-sync/dead-letters response."""

    jobs: list[CrmJobItem]


class HealthResponse(CamelModel):
    """GET /health response."""

    status: str
    storage: str
    timestamp: str  # ISO 8601 timestamp
