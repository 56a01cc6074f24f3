"""
Service Container - Builds and owns the collaborators of one app instance.

The storage backend decides which repository implementations are used:
"postgres" wires the SQL stores to the shared async session factory,
"memory" keeps everything in process (local runs and tests).
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import text
from structlog import get_logger

from entitlement_relay.config import Settings
from entitlement_relay.db.session import get_session_factory
from entitlement_relay.services.change_log import (
    ChangeLogStore,
    InMemoryChangeLogStore,
    SqlChangeLogStore,
)
from entitlement_relay.services.content_catalog import ContentCatalog, StaticContentCatalog
from entitlement_relay.services.crm_sync import (
    CrmSync,
    CrmSyncQueue,
    CrmSyncWorker,
    HttpCrmSync,
    InMemoryCrmSyncQueue,
    SqlCrmSyncQueue,
)
from entitlement_relay.services.devices import (
    DeviceRegistry,
    InMemoryDeviceRegistry,
    SqlDeviceRegistry,
)
from entitlement_relay.services.fanout import FanoutDispatcher
from entitlement_relay.services.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqlIdempotencyStore,
)
from entitlement_relay.services.ledger import (
    EntitlementLedger,
    EntitlementRepository,
    InMemoryEntitlementRepository,
    SqlEntitlementRepository,
)
from entitlement_relay.services.notification_decoder import NotificationDecoder
from entitlement_relay.services.notification_parser import NotificationParser
from entitlement_relay.services.pipeline import NotificationPipeline
from entitlement_relay.services.push_gateway import HttpPushGateway, PushGateway
from entitlement_relay.services.session_registry import SessionRegistry
from entitlement_relay.services.signature_verifier import SignatureVerifier, load_trusted_roots

logger = get_logger(__name__)


async def _no_storage_check() -> None:
    return None


@dataclass
class ServiceContainer:
    """Everything the routes and background workers need."""

    pipeline: NotificationPipeline
    ledger: EntitlementLedger
    change_log: ChangeLogStore
    sessions: SessionRegistry
    devices: DeviceRegistry
    dispatcher: FanoutDispatcher
    idempotency: IdempotencyStore
    crm_queue: CrmSyncQueue | None = None
    crm_worker: CrmSyncWorker | None = None
    storage: str = "memory"
    storage_check: Callable[[], Awaitable[None]] = field(default=_no_storage_check)


@dataclass
class Stores:
    """Storage-backed collaborators for one backend."""

    idempotency: IdempotencyStore
    entitlements: EntitlementRepository
    change_log: ChangeLogStore
    devices: DeviceRegistry
    crm_queue: CrmSyncQueue
    storage_check: Callable[[], Awaitable[None]]


def build_stores(settings: Settings) -> Stores:
    """Create the stores for the configured backend."""
    stale_after = timedelta(seconds=settings.idempotency_stale_after_seconds)
    crm_lease = timedelta(seconds=max(settings.crm_timeout_seconds * 3, 30))

    if settings.uses_memory_storage:
        logger.warning("using_in_memory_storage")
        return Stores(
            idempotency=InMemoryIdempotencyStore(stale_after),
            entitlements=InMemoryEntitlementRepository(),
            change_log=InMemoryChangeLogStore(),
            devices=InMemoryDeviceRegistry(),
            crm_queue=InMemoryCrmSyncQueue(lease=crm_lease),
            storage_check=_no_storage_check,
        )

    session_factory = get_session_factory()

    async def check_database() -> None:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    return Stores(
        idempotency=SqlIdempotencyStore(session_factory, stale_after),
        entitlements=SqlEntitlementRepository(session_factory),
        change_log=SqlChangeLogStore(session_factory),
        devices=SqlDeviceRegistry(session_factory),
        crm_queue=SqlCrmSyncQueue(session_factory, lease=crm_lease),
        storage_check=check_database,
    )


def build_container(
    settings: Settings,
    stores: Stores | None = None,
    verifier: SignatureVerifier | None = None,
    catalog: ContentCatalog | None = None,
    push_gateway: PushGateway | None = None,
    crm: CrmSync | None = None,
) -> ServiceContainer:
    """
    Wire a container from settings.

    Any collaborator passed in explicitly replaces the one settings would build.
    """
    stores = stores or build_stores(settings)

    if verifier is None:
        verifier = SignatureVerifier(
            trusted_roots=load_trusted_roots(settings.apple_root_certificate_paths),
            allowed_algorithms=settings.jws_allowed_algorithms,
            verify_apple_oids=settings.verify_apple_certificate_oids,
        )

    if catalog is None:
        catalog = (
            StaticContentCatalog.from_json_file(settings.content_catalog_path)
            if settings.content_catalog_path
            else StaticContentCatalog()
        )

    if push_gateway is None and settings.push_gateway_url:
        push_gateway = HttpPushGateway(
            settings.push_gateway_url,
            api_key=settings.push_gateway_api_key,
            timeout=settings.push_timeout_seconds,
        )

    if crm is None and settings.crm_base_url:
        crm = HttpCrmSync(
            settings.crm_base_url,
            api_key=settings.crm_api_key,
            timeout=settings.crm_timeout_seconds,
        )

    ledger = EntitlementLedger(
        stores.entitlements, catalog, max_retries=settings.ledger_max_retries
    )
    sessions = SessionRegistry(
        send_timeout=settings.socket_send_timeout_seconds,
        heartbeat_timeout=settings.heartbeat_timeout_seconds,
    )
    crm_queue = stores.crm_queue if crm is not None else None
    dispatcher = FanoutDispatcher(
        change_log=stores.change_log,
        sessions=sessions,
        devices=stores.devices,
        push_gateway=push_gateway,
        crm_queue=crm_queue,
        push_timeout=settings.push_timeout_seconds,
    )

    crm_worker = None
    if crm is not None:
        crm_worker = CrmSyncWorker(
            queue=stores.crm_queue,
            crm=crm,
            ledger=ledger,
            max_attempts=settings.crm_max_attempts,
            backoff_base_seconds=settings.crm_backoff_base_seconds,
            backoff_max_seconds=settings.crm_backoff_max_seconds,
            timeout=settings.crm_timeout_seconds,
            batch_size=settings.crm_batch_size,
        )

    pipeline = NotificationPipeline(
        decoder=NotificationDecoder(verifier, settings.expected_bundle_id or None),
        parser=NotificationParser(settings.supported_payload_versions),
        idempotency=stores.idempotency,
        ledger=ledger,
        dispatcher=dispatcher,
    )

    logger.info(
        "service_container_built",
        storage=settings.storage_backend,
        push_enabled=push_gateway is not None,
        crm_enabled=crm is not None,
    )

    return ServiceContainer(
        pipeline=pipeline,
        ledger=ledger,
        change_log=stores.change_log,
        sessions=sessions,
        devices=stores.devices,
        dispatcher=dispatcher,
        idempotency=stores.idempotency,
        crm_queue=crm_queue,
        crm_worker=crm_worker,
        storage=settings.storage_backend,
        storage_check=stores.storage_check,
    )
