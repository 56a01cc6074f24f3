"""
Notification Decoder - Turns a verified envelope into typed notification data.

The outer JWS and the nested ``data.signedTransactionInfo`` JWS are each
verified independently; nothing from either payload is read before its
signature and chain have been checked.
"""

from datetime import UTC, datetime
from typing import Any

from structlog import get_logger

from entitlement_relay.exceptions import MalformedEnvelopeError
from entitlement_relay.models.domain import (
    DecodedNotification,
    Environment,
    NotificationEnvelope,
    ProductType,
    TransactionInfo,
)
from entitlement_relay.services.signature_verifier import SignatureVerifier

logger = get_logger(__name__)


class NotificationDecoder:
    """Verifies and decodes App Store Server Notifications v2."""

    def __init__(self, verifier: SignatureVerifier, expected_bundle_id: str | None = None) -> None:
        """
        Initialize the decoder.

        Args:
            verifier: Shared JWS verifier holding the pinned roots
            expected_bundle_id: When set, notifications for other apps are rejected
        """
        self._verifier = verifier
        self._expected_bundle_id = expected_bundle_id

    def decode(
        self, envelope: NotificationEnvelope
    ) -> tuple[DecodedNotification, TransactionInfo | None]:
        """
        Verify the envelope and decode the notification and its transaction.

        Returns:
            The decoded notification and, when present, its verified transaction

        Raises:
            MalformedEnvelopeError: If required fields are missing or invalid
            InvalidSignatureError: If either signature fails
            UntrustedCertificateError: If either certificate chain is untrusted
        """
        outer = self._verifier.verify(envelope.signed_payload)
        data = outer.payload.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("data must be an object")

        notification = _build_notification(outer.payload, data)

        transaction: TransactionInfo | None = None
        signed_transaction = data.get("signedTransactionInfo")
        if signed_transaction:
            inner = self._verifier.verify(signed_transaction)
            transaction = _build_transaction(inner.payload)

        self._check_bundle(notification, transaction)

        logger.info(
            "notification_decoded",
            notification_id=notification.notification_id,
            notification_type=notification.notification_type,
            subtype=notification.subtype,
            environment=notification.environment.value,
            transaction_id=transaction.transaction_id if transaction else None,
        )
        return notification, transaction

    def _check_bundle(
        self, notification: DecodedNotification, transaction: TransactionInfo | None
    ) -> None:
        if self._expected_bundle_id is None:
            return
        for bundle_id in (notification.bundle_id, transaction.bundle_id if transaction else None):
            if bundle_id is not None and bundle_id != self._expected_bundle_id:
                raise MalformedEnvelopeError(
                    f"bundle {bundle_id!r} does not match {self._expected_bundle_id!r}"
                )


def _parse_timestamp(ms: object, field_name: str) -> datetime:
    if isinstance(ms, bool) or not isinstance(ms, (int, float)):
        raise MalformedEnvelopeError(f"{field_name} must be epoch milliseconds")
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


def _optional_timestamp(payload: dict[str, Any], field_name: str) -> datetime | None:
    value = payload.get(field_name)
    if value is None:
        return None
    return _parse_timestamp(value, field_name)


def _required_str(payload: dict[str, Any], field_name: str) -> str:
    value = payload.get(field_name)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelopeError(f"missing {field_name}")
    return value


def _build_notification(payload: dict[str, Any], data: dict[str, Any]) -> DecodedNotification:
    raw_environment = data.get("environment")
    try:
        environment = Environment(raw_environment)
    except ValueError as exc:
        raise MalformedEnvelopeError(f"unknown environment {raw_environment!r}") from exc

    subtype = payload.get("subtype")
    return DecodedNotification(
        notification_type=_required_str(payload, "notificationType"),
        subtype=subtype if isinstance(subtype, str) and subtype else None,
        notification_id=_required_str(payload, "notificationUUID"),
        environment=environment,
        signed_date=_parse_timestamp(payload.get("signedDate"), "signedDate"),
        version=str(payload.get("version", "")),
        bundle_id=data.get("bundleId"),
    )


def _build_transaction(payload: dict[str, Any]) -> TransactionInfo:
    raw_type = payload.get("type")
    try:
        product_type = ProductType(raw_type)
    except ValueError as exc:
        raise MalformedEnvelopeError(f"unknown product type {raw_type!r}") from exc

    quantity = payload.get("quantity", 1)
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise MalformedEnvelopeError("quantity must be an integer")

    app_account_token = payload.get("appAccountToken")
    if not isinstance(app_account_token, str) or not app_account_token:
        app_account_token = None

    try:
        return TransactionInfo(
            transaction_id=_required_str(payload, "transactionId"),
            original_transaction_id=_required_str(payload, "originalTransactionId"),
            product_id=_required_str(payload, "productId"),
            product_type=product_type,
            purchase_date=_parse_timestamp(payload.get("purchaseDate"), "purchaseDate"),
            expires_date=_optional_timestamp(payload, "expiresDate"),
            quantity=quantity,
            app_account_token=app_account_token,
            revocation_date=_optional_timestamp(payload, "revocationDate"),
            bundle_id=payload.get("bundleId"),
        )
    except ValueError as exc:
        raise MalformedEnvelopeError(str(exc)) from exc
