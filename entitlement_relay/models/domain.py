"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

Notification payload shapes are closed here: the parser turns every verified
notification into exactly one of the DomainEvent variants, with Unrecognized
as the explicit fallback for anything it does not understand.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Environment(str, Enum):
    """App Store environment that signed the notification."""

    SANDBOX = "Sandbox"
    PRODUCTION = "Production"


class ProductType(str, Enum):
    """App Store product type as reported in the transaction payload."""

    AUTO_RENEWABLE = "Auto-Renewable Subscription"
    NON_RENEWING = "Non-Renewing Subscription"
    CONSUMABLE = "Consumable"
    NON_CONSUMABLE = "Non-Consumable"

    @property
    def is_subscription(self) -> bool:
        """Subscriptions are the only products with expiry semantics."""
        return self in (ProductType.AUTO_RENEWABLE, ProductType.NON_RENEWING)


class EntitlementStatus(str, Enum):
    """Computed access status exposed to clients."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EntitlementState(str, Enum):
    """Raw ledger state written by events. Status is derived from it at read time."""

    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ChangeType(str, Enum):
    """Kind of content access change recorded in the change log."""

    UNLOCK = "unlock"
    REVOKE = "revoke"


class ClaimResult(str, Enum):
    """Outcome of an idempotency claim."""

    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"


class MarkState(str, Enum):
    """Lifecycle of an idempotency mark."""

    PROCESSING = "processing"
    COMPLETED = "completed"


class CrmJobState(str, Enum):
    """Lifecycle of a CRM sync job."""

    PENDING = "pending"
    DEAD = "dead"


class ProcessingResult(str, Enum):
    """What the pipeline did with one notification."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


# ============================================================================
# Inbound notification
# ============================================================================


@dataclass(frozen=True)
class NotificationEnvelope:
    """Raw signed payload as received by the webhook. Never persisted."""

    signed_payload: str
    received_at: datetime

    def __post_init__(self) -> None:
        if not self.signed_payload:
            raise ValueError("signed_payload cannot be empty")


@dataclass(frozen=True)
class DecodedNotification:
    """Verified outer notification.

    Built only by the notification decoder after the signature and the
    certificate chain of the envelope have been checked.
    """

    notification_type: str  # Raw type string, e.g. "DID_RENEW"; unknown values are kept
    subtype: str | None
    notification_id: str  # notificationUUID
    environment: Environment
    signed_date: datetime
    version: str
    bundle_id: str | None = None

    def __post_init__(self) -> None:
        if not self.notification_id:
            raise ValueError("notification_id cannot be empty")
        if not self.notification_type:
            raise ValueError("notification_type cannot be empty")


@dataclass(frozen=True)
class TransactionInfo:
    """Verified inner transaction payload."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    product_type: ProductType
    purchase_date: datetime
    expires_date: datetime | None  # None for non-subscription products
    quantity: int
    app_account_token: str | None = None  # Our user id, set by the client at purchase time
    revocation_date: datetime | None = None
    bundle_id: str | None = None

    def __post_init__(self) -> None:
        """Validate transaction invariants."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.quantity < 1:
            raise ValueError(f"quantity must be positive: {self.quantity}")
        if self.expires_date is not None and not self.product_type.is_subscription:
            raise ValueError(
                f"expires_date is only valid for subscriptions, got {self.product_type.value}"
            )


# ============================================================================
# Domain events (closed set of variants)
# ============================================================================


@dataclass(frozen=True)
class Granted:
    """First purchase or re-acquisition of a product."""

    notification_id: str
    notification_type: str
    subtype: str | None
    transaction: TransactionInfo


@dataclass(frozen=True)
class Renewed:
    """Subscription renewed or extended."""

    notification_id: str
    notification_type: str
    subtype: str | None
    transaction: TransactionInfo


@dataclass(frozen=True)
class Revoked:
    """Access withdrawn (refund, cancel, family-sharing revoke)."""

    notification_id: str
    notification_type: str
    subtype: str | None
    transaction: TransactionInfo


@dataclass(frozen=True)
class Expired:
    """Subscription ended without renewal."""

    notification_id: str
    notification_type: str
    subtype: str | None
    transaction: TransactionInfo


@dataclass(frozen=True)
class Unrecognized:
    """Notification the ledger must not act on (unknown or informational type)."""

    notification_id: str
    notification_type: str
    subtype: str | None
    reason: str


DomainEvent = Granted | Renewed | Revoked | Expired | Unrecognized
LedgerEvent = Granted | Renewed | Revoked | Expired


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class EntitlementRecord:
    """One user's entitlement to one product."""

    user_id: str
    product_id: str
    product_type: ProductType
    state: EntitlementState
    transaction_id: str
    original_transaction_id: str
    purchase_date: datetime
    expires_date: datetime | None
    last_updated: datetime
    version: int = 0  # Optimistic concurrency token, bumped on every write
    # Change written with this version that the change log has not confirmed yet
    pending_change: ChangeType | None = None

    def status_at(self, now: datetime) -> EntitlementStatus:
        """Derive the access status at ``now``.

        Consumables and non-consumables have no expiry semantics and stay
        active once granted unless revoked.
        """
        if self.state is EntitlementState.REVOKED:
            return EntitlementStatus.CANCELLED
        if self.state is EntitlementState.EXPIRED:
            return EntitlementStatus.EXPIRED
        if (
            self.product_type.is_subscription
            and self.expires_date is not None
            and self.expires_date <= now
        ):
            return EntitlementStatus.EXPIRED
        return EntitlementStatus.ACTIVE

    def grants_access(self, now: datetime) -> bool:
        """True if the record unlocks its content at ``now``."""
        return self.status_at(now) is EntitlementStatus.ACTIVE

    def with_changes(self, **changes: object) -> "EntitlementRecord":
        """Copy with the given fields replaced."""
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class LedgerDelta:
    """What one event means for a user's content access, as the change log should see it."""

    user_id: str
    product_id: str
    transaction_id: str
    previous_status: EntitlementStatus | None  # None when the record did not exist
    current_status: EntitlementStatus
    added_content_ids: frozenset[str]
    removed_content_ids: frozenset[str]
    record: EntitlementRecord | None  # Record as written, None when nothing was written
    applied_at: datetime
    # Stored version carrying this change until the change log confirms it
    pending_version: int | None = None

    @property
    def mutated(self) -> bool:
        """True if the ledger row was written."""
        return self.record is not None

    @property
    def unchanged(self) -> bool:
        """True if there is nothing to announce."""
        return not self.added_content_ids and not self.removed_content_ids

    @property
    def change_type(self) -> ChangeType | None:
        """Unlock, revoke, or None when there is nothing to announce."""
        if self.added_content_ids:
            return ChangeType.UNLOCK
        if self.removed_content_ids:
            return ChangeType.REVOKE
        return None

    @property
    def changed_content_ids(self) -> frozenset[str]:
        """Content ids to announce."""
        return self.added_content_ids | self.removed_content_ids


# ============================================================================
# Fan-out
# ============================================================================


@dataclass(frozen=True)
class ContentUnlockEvent:
    """Ephemeral fan-out message shared by the push, socket and poll channels."""

    user_id: str
    change_type: ChangeType
    content_ids: frozenset[str]
    product_id: str
    transaction_id: str
    unlocked_at: datetime

    @classmethod
    def from_delta(cls, delta: LedgerDelta) -> "ContentUnlockEvent":
        """Build the fan-out message for a delta that changed access."""
        change_type = delta.change_type
        if change_type is None:
            raise ValueError("delta did not change content access")
        return cls(
            user_id=delta.user_id,
            change_type=change_type,
            content_ids=delta.changed_content_ids,
            product_id=delta.product_id,
            transaction_id=delta.transaction_id,
            unlocked_at=delta.applied_at,
        )


@dataclass(frozen=True)
class PendingChange:
    """Change-log entry before the store assigns its id and timestamp."""

    user_id: str
    change_type: ChangeType
    content_id: str
    product_id: str
    transaction_id: str


@dataclass(frozen=True)
class ChangeLogEntry:
    """Append-only change-log record. ``changed_at`` is always server-assigned."""

    entry_id: int
    user_id: str
    change_type: ChangeType
    content_id: str
    product_id: str
    transaction_id: str
    changed_at: datetime


# ============================================================================
# Idempotency, CRM, devices
# ============================================================================


@dataclass(frozen=True)
class IdempotencyMark:
    """Durable proof that a notification was claimed (and possibly completed)."""

    notification_id: str
    state: MarkState
    claimed_at: datetime
    processed_at: datetime | None = None


@dataclass(frozen=True)
class CrmSyncJob:
    """Queued CRM update for one entitlement record."""

    job_id: int
    user_id: str
    product_id: str
    status: EntitlementStatus
    transaction_id: str
    purchase_date: datetime
    expires_date: datetime | None
    attempts: int
    next_attempt_at: datetime
    state: CrmJobState
    created_at: datetime
    last_error: str | None = None


@dataclass(frozen=True)
class DeviceToken:
    """Push device registered for a user."""

    user_id: str
    device_token: str
    platform: str
    registered_at: datetime


@dataclass(frozen=True)
class ProcessingOutcome:
    """Result of running one notification through the pipeline."""

    notification_id: str
    result: ProcessingResult
    delta: LedgerDelta | None = None
    detail: str | None = field(default=None, compare=False)
