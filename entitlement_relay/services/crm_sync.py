"""
CRM Sync - Durable retry queue feeding ledger changes to the external CRM.

The webhook path only enqueues; a separate worker loop drains the queue.
Failed attempts back off exponentially (base * 2^(attempts-1), capped), and
after the configured number of attempts a job is parked in the dead state
for an operator to inspect and re-queue. CRM outages therefore never delay
the webhook response or affect entitlement correctness.

The worker sends the ledger record as it is at send time, not the snapshot
taken at enqueue, so a late retry never overwrites the CRM with stale state.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_relay.db.models import CrmSyncJobRow
from entitlement_relay.exceptions import CrmJobNotFoundError, DownstreamUnavailableError
from entitlement_relay.models.domain import (
    Clock,
    CrmJobState,
    CrmSyncJob,
    EntitlementRecord,
    EntitlementStatus,
    utc_now,
)
from entitlement_relay.observability.metrics import metrics
from entitlement_relay.services.ledger import EntitlementLedger

logger = get_logger(__name__)


def compute_backoff(attempts: int, base_seconds: float, max_seconds: float) -> timedelta:
    """Delay before the next attempt after ``attempts`` failures."""
    exponent = max(attempts - 1, 0)
    # Cap the exponent so huge attempt counts do not overflow float math
    delay = base_seconds * (2 ** min(exponent, 62))
    return timedelta(seconds=min(delay, max_seconds))


# ============================================================================
# CRM client
# ============================================================================


class CrmSync(Protocol):
    """Outbound CRM collaborator."""

    async def update_entitlements(self, user_id: str, record: EntitlementRecord) -> None:
        """
        Push one entitlement record to the CRM.

        Raises:
            DownstreamUnavailableError: If the CRM cannot be reached or refuses the update
        """
        ...


class HttpCrmSync:
    """CRM reached over its REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        clock: Clock = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._clock = clock
        self._transport = transport

    async def update_entitlements(self, user_id: str, record: EntitlementRecord) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        body = {
            "productId": record.product_id,
            "status": record.status_at(self._clock()).value,
            "transactionId": record.transaction_id,
            "originalTransactionId": record.original_transaction_id,
            "purchaseDate": record.purchase_date.isoformat(),
            "expiresDate": record.expires_date.isoformat() if record.expires_date else None,
            "lastUpdated": record.last_updated.isoformat(),
        }

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.put(
                    f"{self._base_url}/users/{user_id}/entitlements/{record.product_id}",
                    json=body,
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise DownstreamUnavailableError("crm", str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            logger.error(
                "crm_api_error",
                status=response.status_code,
                error=response.text[:500],
            )
            raise DownstreamUnavailableError("crm", f"HTTP {response.status_code}")


# ============================================================================
# Queue
# ============================================================================


class CrmSyncQueue(Protocol):
    """Durable queue of CRM sync jobs."""

    async def enqueue(self, record: EntitlementRecord, status: EntitlementStatus) -> CrmSyncJob:
        ...

    async def due(self, now: datetime, limit: int) -> list[CrmSyncJob]:
        """
        Lease up to ``limit`` pending jobs whose next attempt is due.

        Leased jobs are not handed out again until the lease runs out.
        """
        ...

    async def mark_succeeded(self, job_id: int) -> None:
        ...

    async def mark_failed(
        self, job_id: int, error: str, next_attempt_at: datetime, dead: bool
    ) -> CrmSyncJob:
        ...

    async def dead_letters(self, limit: int = 100) -> list[CrmSyncJob]:
        ...

    async def requeue(self, job_id: int, now: datetime) -> CrmSyncJob:
        """
        Move a dead job back to pending with a fresh attempt budget.

        Raises:
            CrmJobNotFoundError: If no dead job has this id
        """
        ...


class InMemoryCrmSyncQueue:
    """Process-local queue."""

    def __init__(self, lease: timedelta = timedelta(seconds=60), clock: Clock = utc_now) -> None:
        self._lease = lease
        self._clock = clock
        self._jobs: dict[int, CrmSyncJob] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def enqueue(self, record: EntitlementRecord, status: EntitlementStatus) -> CrmSyncJob:
        now = self._clock()
        async with self._lock:
            job = CrmSyncJob(
                job_id=self._next_id,
                user_id=record.user_id,
                product_id=record.product_id,
                status=status,
                transaction_id=record.transaction_id,
                purchase_date=record.purchase_date,
                expires_date=record.expires_date,
                attempts=0,
                next_attempt_at=now,
                state=CrmJobState.PENDING,
                created_at=now,
            )
            self._jobs[job.job_id] = job
            self._next_id += 1
        return job

    async def due(self, now: datetime, limit: int) -> list[CrmSyncJob]:
        async with self._lock:
            ready = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.state is CrmJobState.PENDING and job.next_attempt_at <= now
                ),
                key=lambda job: (job.next_attempt_at, job.job_id),
            )[:limit]
            for job in ready:
                self._jobs[job.job_id] = _replace_job(job, next_attempt_at=now + self._lease)
        return ready

    async def mark_succeeded(self, job_id: int) -> None:
        async with self._lock:
            self._jobs.pop(job_id, None)

    async def mark_failed(
        self, job_id: int, error: str, next_attempt_at: datetime, dead: bool
    ) -> CrmSyncJob:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise CrmJobNotFoundError(job_id)
            updated = _replace_job(
                job,
                attempts=job.attempts + 1,
                next_attempt_at=next_attempt_at,
                state=CrmJobState.DEAD if dead else CrmJobState.PENDING,
                last_error=error,
            )
            self._jobs[job_id] = updated
        return updated

    async def dead_letters(self, limit: int = 100) -> list[CrmSyncJob]:
        dead = [job for job in self._jobs.values() if job.state is CrmJobState.DEAD]
        return sorted(dead, key=lambda job: job.job_id)[:limit]

    async def requeue(self, job_id: int, now: datetime) -> CrmSyncJob:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not CrmJobState.DEAD:
                raise CrmJobNotFoundError(job_id)
            updated = _replace_job(
                job, attempts=0, next_attempt_at=now, state=CrmJobState.PENDING
            )
            self._jobs[job_id] = updated
        return updated

    async def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state is CrmJobState.PENDING)


class SqlCrmSyncQueue:
    """
    PostgreSQL queue.

    ``due`` leases rows with SELECT ... FOR UPDATE SKIP LOCKED and pushes
    their next_attempt_at forward, so several workers never share a job.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease: timedelta = timedelta(seconds=60),
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._lease = lease
        self._clock = clock

    async def enqueue(self, record: EntitlementRecord, status: EntitlementStatus) -> CrmSyncJob:
        now = self._clock()
        row = CrmSyncJobRow(
            user_id=record.user_id,
            product_id=record.product_id,
            entitlement_status=status.value,
            transaction_id=record.transaction_id,
            purchase_date=record.purchase_date,
            expires_date=record.expires_date,
            attempts=0,
            next_attempt_at=now,
            state=CrmJobState.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.flush()
            await session.commit()
        return _row_to_job(row)

    async def due(self, now: datetime, limit: int) -> list[CrmSyncJob]:
        async with self._session_factory() as session:
            stmt = (
                select(CrmSyncJobRow)
                .where(
                    CrmSyncJobRow.state == CrmJobState.PENDING.value,
                    CrmSyncJobRow.next_attempt_at <= now,
                )
                .order_by(CrmSyncJobRow.next_attempt_at, CrmSyncJobRow.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = (await session.execute(stmt)).scalars().all()
            jobs = [_row_to_job(row) for row in rows]
            for row in rows:
                row.next_attempt_at = now + self._lease
            await session.commit()
        return jobs

    async def mark_succeeded(self, job_id: int) -> None:
        async with self._session_factory() as session:
            row = await session.get(CrmSyncJobRow, job_id)
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def mark_failed(
        self, job_id: int, error: str, next_attempt_at: datetime, dead: bool
    ) -> CrmSyncJob:
        async with self._session_factory() as session:
            row = await session.get(CrmSyncJobRow, job_id)
            if row is None:
                raise CrmJobNotFoundError(job_id)
            row.attempts += 1
            row.next_attempt_at = next_attempt_at
            row.state = (CrmJobState.DEAD if dead else CrmJobState.PENDING).value
            row.last_error = error[:2000]
            await session.commit()
            return _row_to_job(row)

    async def dead_letters(self, limit: int = 100) -> list[CrmSyncJob]:
        async with self._session_factory() as session:
            stmt = (
                select(CrmSyncJobRow)
                .where(CrmSyncJobRow.state == CrmJobState.DEAD.value)
                .order_by(CrmSyncJobRow.id)
                .limit(limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_job(row) for row in rows]

    async def requeue(self, job_id: int, now: datetime) -> CrmSyncJob:
        async with self._session_factory() as session:
            row = await session.get(CrmSyncJobRow, job_id)
            if row is None or row.state != CrmJobState.DEAD.value:
                raise CrmJobNotFoundError(job_id)
            row.attempts = 0
            row.next_attempt_at = now
            row.state = CrmJobState.PENDING.value
            await session.commit()
            return _row_to_job(row)


def _replace_job(job: CrmSyncJob, **changes: object) -> CrmSyncJob:
    return replace(job, **changes)  # type: ignore[arg-type]


def _row_to_job(row: CrmSyncJobRow) -> CrmSyncJob:
    """Convert ORM row to domain model."""
    return CrmSyncJob(
        job_id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        status=EntitlementStatus(row.entitlement_status),
        transaction_id=row.transaction_id,
        purchase_date=row.purchase_date,
        expires_date=row.expires_date,
        attempts=row.attempts,
        next_attempt_at=row.next_attempt_at,
        state=CrmJobState(row.state),
        created_at=row.created_at,
        last_error=row.last_error,
    )


# ============================================================================
# Worker
# ============================================================================


class CrmSyncWorker:
    """Drains the CRM queue in the background."""

    def __init__(
        self,
        queue: CrmSyncQueue,
        crm: CrmSync,
        ledger: EntitlementLedger,
        max_attempts: int = 8,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 3600.0,
        timeout: float = 10.0,
        batch_size: int = 50,
        clock: Clock = utc_now,
    ) -> None:
        self._queue = queue
        self._crm = crm
        self._ledger = ledger
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._timeout = timeout
        self._batch_size = batch_size
        self._clock = clock

    async def run_once(self) -> int:
        """
        Attempt every job that is due now.

        Returns:
            Number of jobs attempted
        """
        jobs = await self._queue.due(self._clock(), self._batch_size)
        for job in jobs:
            await self._attempt(job)
        return len(jobs)

    async def run(self, poll_interval: float) -> None:
        """Drain forever, sleeping ``poll_interval`` when idle. Cancel to stop."""
        logger.info("crm_sync_worker_started", poll_interval=poll_interval)
        while True:
            try:
                attempted = await self.run_once()
            except Exception:
                logger.exception("crm_sync_worker_iteration_failed")
                attempted = 0
            if attempted < self._batch_size:
                await asyncio.sleep(poll_interval)

    async def _attempt(self, job: CrmSyncJob) -> None:
        try:
            record = await self._ledger.get_record(job.user_id, job.product_id)
            if record is None:
                logger.warning("crm_sync_record_missing", job_id=job.job_id, user_id=job.user_id)
                await self._queue.mark_succeeded(job.job_id)
                return
            await asyncio.wait_for(
                self._crm.update_entitlements(job.user_id, record), timeout=self._timeout
            )
        except (DownstreamUnavailableError, TimeoutError) as exc:
            await self._fail(job, str(exc) or type(exc).__name__)
            return
        except Exception as exc:
            # Any other failure still counts against the attempt budget
            logger.exception("crm_sync_attempt_error", job_id=job.job_id, user_id=job.user_id)
            await self._fail(job, f"{type(exc).__name__}: {exc}")
            return

        await self._queue.mark_succeeded(job.job_id)
        metrics.crm_jobs_total.labels(outcome="succeeded").inc()
        logger.info(
            "crm_sync_succeeded",
            job_id=job.job_id,
            user_id=job.user_id,
            product_id=job.product_id,
            attempts=job.attempts + 1,
        )

    async def _fail(self, job: CrmSyncJob, error: str) -> None:
        attempts = job.attempts + 1
        dead = attempts >= self._max_attempts
        next_attempt_at = self._clock() + compute_backoff(
            attempts, self._backoff_base, self._backoff_max
        )
        await self._queue.mark_failed(job.job_id, error, next_attempt_at, dead)

        if dead:
            metrics.crm_jobs_total.labels(outcome="dead").inc()
            logger.error(
                "crm_sync_dead_lettered",
                job_id=job.job_id,
                user_id=job.user_id,
                product_id=job.product_id,
                attempts=attempts,
                error=error,
            )
        else:
            metrics.crm_jobs_total.labels(outcome="retry").inc()
            logger.warning(
                "crm_sync_retry_scheduled",
                job_id=job.job_id,
                user_id=job.user_id,
                attempts=attempts,
                next_attempt_at=next_attempt_at.isoformat(),
                error=error,
            )
