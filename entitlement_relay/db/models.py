"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class IdempotencyMarkRow(Base):
    """
    ORM model for idempotency_marks table.

    One row per notificationUUID ever claimed. Rows are never pruned.
    """

    __tablename__ = "idempotency_marks"

    notification_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="processing")
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("state IN ('processing', 'completed')", name="ck_idempotency_state"),
        Index("idx_idempotency_marks_state_claimed", "state", "claimed_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<IdempotencyMarkRow(notification_id={self.notification_id}, state={self.state})>"


class EntitlementRow(Base):
    """
    ORM model for entitlements table.

    Authoritative user -> product access state. Status is derived at read
    time from ``state`` and ``expires_date``; rows are never deleted.
    """

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # unlock|revoke not yet confirmed by the change log
    pending_change: Mapped[str | None] = mapped_column(String(20), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_entitlement_user_product"),
        CheckConstraint(
            "state IN ('granted', 'revoked', 'expired')", name="ck_entitlement_state"
        ),
        CheckConstraint(
            "pending_change IS NULL OR pending_change IN ('unlock', 'revoke')",
            name="ck_entitlement_pending_change",
        ),
        CheckConstraint("version > 0", name="ck_entitlement_version_positive"),
        Index("idx_entitlements_user_id", "user_id"),
        Index("idx_entitlements_original_tx", "original_transaction_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EntitlementRow(user_id={self.user_id}, product_id={self.product_id}, "
            f"state={self.state}, version={self.version})>"
        )


class EntitlementChangeRow(Base):
    """
    ORM model for entitlement_changes table.

    Append-only change log read by polling clients.
    """

    __tablename__ = "entitlement_changes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("change_type IN ('unlock', 'revoke')", name="ck_change_type"),
        Index("idx_entitlement_changes_user_changed", "user_id", "changed_at", "id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EntitlementChangeRow(id={self.id}, user_id={self.user_id}, "
            f"change_type={self.change_type}, content_id={self.content_id})>"
        )


class CrmSyncJobRow(Base):
    """
    ORM model for crm_sync_jobs table.

    Durable retry queue for CRM updates. Successful jobs are deleted;
    jobs that exhaust their attempts stay behind in the 'dead' state.
    """

    __tablename__ = "crm_sync_jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entitlement_status: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("state IN ('pending', 'dead')", name="ck_crm_job_state"),
        CheckConstraint("attempts >= 0", name="ck_crm_job_attempts_non_negative"),
        Index("idx_crm_sync_jobs_due", "state", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CrmSyncJobRow(id={self.id}, user_id={self.user_id}, "
            f"product_id={self.product_id}, state={self.state}, attempts={self.attempts})>"
        )


class DeviceTokenRow(Base):
    """
    ORM model for device_tokens table.

    Push targets per user.
    """

    __tablename__ = "device_tokens"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device_token: Mapped[str] = mapped_column(String(512), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="ios")
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "device_token", name="uq_device_token_user"),
        Index("idx_device_tokens_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<DeviceTokenRow(user_id={self.user_id}, platform={self.platform})>"
