"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A throwaway certificate authority (root -> intermediate -> leaf) that
  signs notifications the way the App Store does
- Notification and transaction payload builders
- Controllable clock, fake sessions, fake push gateway and fake CRM
- In-memory service container and API test client
"""

import asyncio
import base64
import os
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("LOG_FORMAT", "console")

from entitlement_relay.config import Settings
from entitlement_relay.exceptions import DownstreamUnavailableError
from entitlement_relay.models.api import StreamMessage
from entitlement_relay.models.domain import (
    EntitlementRecord,
    NotificationEnvelope,
    ProductType,
    TransactionInfo,
)
from entitlement_relay.services.container import ServiceContainer, build_container
from entitlement_relay.services.content_catalog import StaticContentCatalog
from entitlement_relay.services.push_gateway import PushPayload
from entitlement_relay.services.signature_verifier import (
    APPLE_INTERMEDIATE_OID,
    APPLE_LEAF_OID,
    SignatureVerifier,
)

BUNDLE_ID = "com.example.reader"
SUBSCRIPTION_PRODUCT = "com.example.reader.premium.monthly"
ALBUM_PRODUCT = "com.example.reader.album.spring"
COINS_PRODUCT = "com.example.reader.coins.100"

CATALOG = {
    SUBSCRIPTION_PRODUCT: ["library", "offline-mode"],
    ALBUM_PRODUCT: ["album-spring"],
    COINS_PRODUCT: ["coins-100"],
}


# ============================================================================
# Clock
# ============================================================================


class MutableClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# ============================================================================
# Certificate authority
# ============================================================================


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Authority"),
        ]
    )


def make_certificate(
    common_name: str,
    key: ec.EllipticCurvePrivateKey,
    issuer_name: x509.Name | None = None,
    issuer_key: ec.EllipticCurvePrivateKey | None = None,
    ca: bool = False,
    marker_oid: x509.ObjectIdentifier | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> x509.Certificate:
    """Build a certificate; self-signed when no issuer is given."""
    now = datetime.now(UTC)
    subject = _name(common_name)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if marker_oid is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker_oid, b"\x05\x00"), critical=False
        )
    return builder.sign(issuer_key or key, hashes.SHA256())


def new_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def x5c(chain: list[x509.Certificate]) -> list[str]:
    return [
        base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()
        for cert in chain
    ]


@dataclass
class TestAuthority:
    """Root, intermediate and leaf shaped like the App Store signing chain."""

    __test__ = False

    root_key: ec.EllipticCurvePrivateKey
    root: x509.Certificate
    intermediate_key: ec.EllipticCurvePrivateKey
    intermediate: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey
    leaf: x509.Certificate

    @property
    def chain(self) -> list[x509.Certificate]:
        return [self.leaf, self.intermediate, self.root]

    def sign(
        self,
        payload: dict[str, Any],
        chain: list[x509.Certificate] | None = None,
        key: ec.EllipticCurvePrivateKey | None = None,
        algorithm: str = "ES256",
    ) -> str:
        """Compact JWS carrying the chain in x5c, like App Store payloads."""
        return jwt.encode(
            payload,
            key or self.leaf_key,
            algorithm=algorithm,
            headers={"x5c": x5c(chain or self.chain)},
        )

    def verifier(self, **kwargs: Any) -> SignatureVerifier:
        return SignatureVerifier(trusted_roots=[self.root], **kwargs)


def build_authority(common_name: str = "Test Root CA") -> TestAuthority:
    root_key = new_key()
    root = make_certificate(common_name, root_key, ca=True)
    intermediate_key = new_key()
    intermediate = make_certificate(
        "Test Intermediate",
        intermediate_key,
        issuer_name=root.subject,
        issuer_key=root_key,
        ca=True,
        marker_oid=APPLE_INTERMEDIATE_OID,
    )
    leaf_key = new_key()
    leaf = make_certificate(
        "Test Signing Leaf",
        leaf_key,
        issuer_name=intermediate.subject,
        issuer_key=intermediate_key,
        marker_oid=APPLE_LEAF_OID,
    )
    return TestAuthority(root_key, root, intermediate_key, intermediate, leaf_key, leaf)


@pytest.fixture(scope="session")
def authority() -> TestAuthority:
    return build_authority()


@pytest.fixture(scope="session")
def rogue_authority() -> TestAuthority:
    """Structurally identical chain that is not pinned anywhere."""
    return build_authority("Rogue Root CA")


# ============================================================================
# Payload builders
# ============================================================================


def transaction_payload(
    user_id: str | None = "user-1",
    product_id: str = SUBSCRIPTION_PRODUCT,
    product_type: str = "Auto-Renewable Subscription",
    transaction_id: str | None = None,
    original_transaction_id: str = "1000000000000001",
    purchase_date: datetime | None = None,
    expires_date: datetime | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """JWSTransactionDecodedPayload fields used by the relay."""
    purchase_date = purchase_date or datetime.now(UTC)
    payload: dict[str, Any] = {
        "transactionId": transaction_id or str(uuid.uuid4().int)[:16],
        "originalTransactionId": original_transaction_id,
        "bundleId": BUNDLE_ID,
        "productId": product_id,
        "type": product_type,
        "purchaseDate": to_millis(purchase_date),
        "quantity": 1,
        "signedDate": to_millis(datetime.now(UTC)),
        "environment": "Sandbox",
    }
    if product_type == "Auto-Renewable Subscription":
        payload["expiresDate"] = to_millis(expires_date or purchase_date + timedelta(days=30))
    elif expires_date is not None:
        payload["expiresDate"] = to_millis(expires_date)
    if user_id is not None:
        payload["appAccountToken"] = user_id
    payload.update(extra)
    return payload


def notification_payload(
    notification_type: str,
    subtype: str | None = None,
    signed_transaction: str | None = None,
    notification_id: str | None = None,
    environment: str = "Sandbox",
    version: str = "2.0",
    signed_date: datetime | None = None,
) -> dict[str, Any]:
    """responseBodyV2DecodedPayload."""
    data: dict[str, Any] = {
        "bundleId": BUNDLE_ID,
        "environment": environment,
    }
    if signed_transaction is not None:
        data["signedTransactionInfo"] = signed_transaction
    payload: dict[str, Any] = {
        "notificationType": notification_type,
        "notificationUUID": notification_id or str(uuid.uuid4()),
        "data": data,
        "version": version,
        "signedDate": to_millis(signed_date or datetime.now(UTC)),
    }
    if subtype is not None:
        payload["subtype"] = subtype
    return payload


def signed_notification(
    authority: TestAuthority,
    notification_type: str,
    subtype: str | None = None,
    notification_id: str | None = None,
    **transaction: Any,
) -> str:
    """Fully signed notification with a signed transaction inside."""
    signed_transaction = authority.sign(transaction_payload(**transaction))
    return authority.sign(
        notification_payload(
            notification_type,
            subtype=subtype,
            signed_transaction=signed_transaction,
            notification_id=notification_id,
        )
    )


def envelope(signed_payload: str) -> NotificationEnvelope:
    return NotificationEnvelope(signed_payload=signed_payload, received_at=datetime.now(UTC))


# ============================================================================
# Fakes for outbound collaborators
# ============================================================================


class FakeSession:
    """LiveSession double recording what it was sent."""

    def __init__(self, last_seen: float = 0.0, fail: bool = False, hang: bool = False) -> None:
        self.session_id = uuid.uuid4().hex
        self.last_seen = last_seen
        self.fail = fail
        self.hang = hang
        self.sent: list[StreamMessage] = []
        self.closed = False

    async def send(self, message: StreamMessage) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True


class FakePushGateway:
    """PushGateway double."""

    def __init__(self, failing_tokens: set[str] | None = None) -> None:
        self.failing_tokens = failing_tokens or set()
        self.sent: list[tuple[str, PushPayload]] = []

    async def send(self, device_token: str, payload: PushPayload) -> None:
        if device_token in self.failing_tokens:
            raise DownstreamUnavailableError("push_gateway", "HTTP 503")
        self.sent.append((device_token, payload))


class FakeCrm:
    """CrmSync double that fails while ``available`` is False."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.calls: list[tuple[str, EntitlementRecord]] = []

    async def update_entitlements(self, user_id: str, record: EntitlementRecord) -> None:
        if not self.available:
            raise DownstreamUnavailableError("crm", "HTTP 502")
        self.calls.append((user_id, record))


@pytest.fixture
def push_gateway() -> FakePushGateway:
    return FakePushGateway()


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def catalog() -> StaticContentCatalog:
    return StaticContentCatalog(CATALOG)


# ============================================================================
# Container and API client
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        storage_backend="memory",
        tracing_enabled=False,
        admin_api_key="test-admin-key",
        expected_bundle_id=BUNDLE_ID,
    )


@pytest.fixture
def container(
    test_settings: Settings,
    authority: TestAuthority,
    catalog: StaticContentCatalog,
    push_gateway: FakePushGateway,
    crm: FakeCrm,
) -> ServiceContainer:
    """In-memory container trusting the test authority."""
    return build_container(
        test_settings,
        verifier=authority.verifier(),
        catalog=catalog,
        push_gateway=push_gateway,
        crm=crm,
    )


@pytest.fixture
def client(container: ServiceContainer) -> Iterator[TestClient]:
    """API client over the in-memory container, without background workers."""
    from entitlement_relay.main import create_app

    app = create_app(container, run_background_tasks=False)
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# Domain builders
# ============================================================================


def make_transaction(
    product_id: str = SUBSCRIPTION_PRODUCT,
    product_type: ProductType = ProductType.AUTO_RENEWABLE,
    transaction_id: str = "2000000000000001",
    user_id: str | None = "user-1",
    purchase_date: datetime | None = None,
    expires_date: datetime | None = None,
) -> TransactionInfo:
    purchase_date = purchase_date or datetime.now(UTC)
    if product_type is ProductType.AUTO_RENEWABLE and expires_date is None:
        expires_date = purchase_date + timedelta(days=30)
    return TransactionInfo(
        transaction_id=transaction_id,
        original_transaction_id="1000000000000001",
        product_id=product_id,
        product_type=product_type,
        purchase_date=purchase_date,
        expires_date=expires_date,
        quantity=1,
        app_account_token=user_id,
    )


def make_event(kind: type, transaction: TransactionInfo, notification_id: str | None = None):
    """Granted/Renewed/Revoked/Expired event around ``transaction``."""
    return kind(
        notification_id=notification_id or str(uuid.uuid4()),
        notification_type=kind.__name__.upper(),
        subtype=None,
        transaction=transaction,
    )
