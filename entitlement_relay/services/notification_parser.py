"""
Notification Parser - Maps verified notifications onto domain events.

Every (notificationType, subtype) pair resolves to exactly one DomainEvent.
Types the ledger has no use for, and types this service has never seen,
become Unrecognized rather than errors so the webhook can still acknowledge
them and Apple stops retrying.
"""

from collections.abc import Iterable

from structlog import get_logger

from entitlement_relay.exceptions import UnsupportedPayloadVersionError
from entitlement_relay.models.domain import (
    DecodedNotification,
    DomainEvent,
    Expired,
    Granted,
    Renewed,
    Revoked,
    TransactionInfo,
    Unrecognized,
)

logger = get_logger(__name__)

SUPPORTED_PAYLOAD_VERSIONS = frozenset({"2.0"})

_ANY_SUBTYPE = "*"

# (notificationType, subtype) -> event class; None marks informational pairs.
# Exact subtype matches win over the wildcard entry for the same type.
EVENT_TABLE: dict[tuple[str, str], type[Granted | Renewed | Revoked | Expired] | None] = {
    ("SUBSCRIBED", _ANY_SUBTYPE): Granted,
    ("ONE_TIME_CHARGE", _ANY_SUBTYPE): Granted,
    ("PURCHASE", _ANY_SUBTYPE): Granted,
    ("REFUND_REVERSED", _ANY_SUBTYPE): Granted,
    ("DID_RENEW", _ANY_SUBTYPE): Renewed,
    ("RENEWAL", _ANY_SUBTYPE): Renewed,
    ("RENEWAL_EXTENDED", _ANY_SUBTYPE): Renewed,
    ("REFUND", _ANY_SUBTYPE): Revoked,
    ("REVOKE", _ANY_SUBTYPE): Revoked,
    ("CANCEL", _ANY_SUBTYPE): Revoked,
    ("EXPIRED", _ANY_SUBTYPE): Expired,
    ("GRACE_PERIOD_EXPIRED", _ANY_SUBTYPE): Expired,
    ("DID_FAIL_TO_RENEW", _ANY_SUBTYPE): Expired,
    # Billing retry inside the grace period keeps access until the grace period ends
    ("DID_FAIL_TO_RENEW", "GRACE_PERIOD"): None,
    ("TEST", _ANY_SUBTYPE): None,
    ("CONSUMPTION_REQUEST", _ANY_SUBTYPE): None,
    ("DID_CHANGE_RENEWAL_PREF", _ANY_SUBTYPE): None,
    ("DID_CHANGE_RENEWAL_STATUS", _ANY_SUBTYPE): None,
    ("OFFER_REDEEMED", _ANY_SUBTYPE): None,
    ("PRICE_INCREASE", _ANY_SUBTYPE): None,
    ("REFUND_DECLINED", _ANY_SUBTYPE): None,
    ("RENEWAL_EXTENSION", _ANY_SUBTYPE): None,
    ("EXTERNAL_PURCHASE_TOKEN", _ANY_SUBTYPE): None,
    ("METADATA_UPDATE", _ANY_SUBTYPE): None,
    ("MIGRATION", _ANY_SUBTYPE): None,
    ("PRICE_CHANGE", _ANY_SUBTYPE): None,
    ("RESCIND_CONSENT", _ANY_SUBTYPE): None,
}


class NotificationParser:
    """Stateless mapper from decoded notifications to domain events."""

    def __init__(self, supported_versions: Iterable[str] = SUPPORTED_PAYLOAD_VERSIONS) -> None:
        self._supported_versions = frozenset(supported_versions)

    def parse(
        self, decoded: DecodedNotification, transaction: TransactionInfo | None
    ) -> DomainEvent:
        """
        Map a decoded notification to a domain event.

        Raises:
            UnsupportedPayloadVersionError: If the payload version is not supported
        """
        if decoded.version not in self._supported_versions:
            raise UnsupportedPayloadVersionError(decoded.version, self._supported_versions)

        subtype = decoded.subtype or _ANY_SUBTYPE
        key = (decoded.notification_type, subtype)
        if key not in EVENT_TABLE:
            key = (decoded.notification_type, _ANY_SUBTYPE)

        if key not in EVENT_TABLE:
            return _unrecognized(decoded, "unknown notification type")

        event_class = EVENT_TABLE[key]
        if event_class is None:
            return _unrecognized(decoded, "informational notification")

        if transaction is None:
            return _unrecognized(decoded, "no signed transaction info")

        return event_class(
            notification_id=decoded.notification_id,
            notification_type=decoded.notification_type,
            subtype=decoded.subtype,
            transaction=transaction,
        )


def parse_notification(
    decoded: DecodedNotification,
    transaction: TransactionInfo | None,
    supported_versions: Iterable[str] = SUPPORTED_PAYLOAD_VERSIONS,
) -> DomainEvent:
    """Parse with a one-off parser. See NotificationParser.parse."""
    return NotificationParser(supported_versions).parse(decoded, transaction)


def _unrecognized(decoded: DecodedNotification, reason: str) -> Unrecognized:
    logger.info(
        "notification_unrecognized",
        notification_id=decoded.notification_id,
        notification_type=decoded.notification_type,
        subtype=decoded.subtype,
        reason=reason,
    )
    return Unrecognized(
        notification_id=decoded.notification_id,
        notification_type=decoded.notification_type,
        subtype=decoded.subtype,
        reason=reason,
    )
