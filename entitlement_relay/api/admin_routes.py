"""
Admin Routes - Operator endpoints for the CRM sync dead-letter queue.

All endpoints require the X-Admin-Key header.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from structlog import get_logger

from entitlement_relay.api.dependencies import get_crm_queue, require_admin
from entitlement_relay.exceptions import CrmJobNotFoundError
from entitlement_relay.models.api import CrmJobItem, CrmJobListResponse
from entitlement_relay.models.domain import utc_now
from entitlement_relay.services.crm_sync import CrmSyncQueue

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/crm-sync/dead-letters", response_model=CrmJobListResponse)
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    queue: CrmSyncQueue = Depends(get_crm_queue),
) -> CrmJobListResponse:
    """CRM jobs that exhausted their attempts."""
    jobs = await queue.dead_letters(limit)
    return CrmJobListResponse(jobs=[CrmJobItem.from_job(job) for job in jobs])


@router.post("/crm-sync/{job_id}/retry", response_model=CrmJobItem)
async def retry_dead_letter(
    job_id: int,
    queue: CrmSyncQueue = Depends(get_crm_queue),
) -> CrmJobItem:
    """Move a dead job back to pending with a fresh attempt budget."""
    try:
        job = await queue.requeue(job_id, utc_now())
    except CrmJobNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Dead CRM job not found: {job_id}",
        ) from exc

    logger.info("crm_job_requeued", job_id=job_id, user_id=job.user_id)
    return CrmJobItem.from_job(job)
