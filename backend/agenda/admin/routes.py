import uuid
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.database import get_db
from agenda.dependencies import get_scheduler_context, require_admin_key
from agenda.models.enums import JobStatus, JobType, WarningStatus
from agenda.schemas.job import CancelJobResponse, JobFilter, JobListResponse, JobResponse
from agenda.schemas.warning import WarningListResponse, WarningResponse
from agenda.services.context import SchedulerContext
from agenda.services.warnings import list_warnings
from agenda.utils.rate_limit import ADMIN_READ_LIMIT, ADMIN_WRITE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.get("/jobs", response_model=JobListResponse)
@limiter.limit(ADMIN_READ_LIMIT)
async def list_jobs(
    request: Request,
    job_type: JobType | None = None,
    job_status: list[JobStatus] | None = Query(default=None, alias="status"),
    appointment_id: uuid.UUID | None = None,
    chain_id: uuid.UUID | None = None,
    due_before: datetime | None = None,
    limit: int = Query(50, ge=1, le=500),
    ctx: SchedulerContext = Depends(get_scheduler_context),
):
    """List jobs, by default the ones still scheduled or running."""
    if due_before is not None and due_before.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="due_before must include a timezone offset",
        )
    filters = {
        "job_type": job_type,
        "appointment_id": appointment_id,
        "chain_id": chain_id,
        "due_before": due_before,
        "limit": limit,
    }
    if job_status:
        filters["statuses"] = tuple(job_status)
    job_filter = JobFilter(**filters)

    jobs = await ctx.store.list_pending(job_filter)
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        count=len(jobs),
    )


@router.post("/jobs/{job_id}/cancel", response_model=CancelJobResponse)
@limiter.limit(ADMIN_WRITE_LIMIT)
async def cancel_job(
    request: Request,
    job_id: uuid.UUID,
    ctx: SchedulerContext = Depends(get_scheduler_context),
):
    """Cancel a job that has not been claimed yet."""
    job = await ctx.store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    cancelled = await ctx.store.cancel(job_id)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.status} and can no longer be cancelled",
        )
    logger.info("admin_job_cancelled", job_id=str(job_id), job_type=job.job_type)
    return CancelJobResponse(id=job_id, cancelled=True)


@router.get("/warnings", response_model=WarningListResponse)
@limiter.limit(ADMIN_READ_LIMIT)
async def get_warnings(
    request: Request,
    owner_id: uuid.UUID | None = None,
    warning_status: WarningStatus | None = Query(default=None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    warnings = await list_warnings(db, owner_id=owner_id, status=warning_status, limit=limit)
    return WarningListResponse(
        warnings=[WarningResponse.model_validate(w) for w in warnings],
    )
