"""
Admin API Endpoints

Read-only status: job run history, heartbeats and health, leases, integrity.
"""
from fastapi import APIRouter, Depends, Query, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from jqsync.config import settings
from jqsync.database import get_db
from jqsync.schemas.status import (
    HeartbeatResponse,
    IntegrityResponse,
    JobHealthResponse,
    JobLockResponse,
    JobRunResponse,
)
from jqsync.services.heartbeat import check_all_jobs_health, get_all_heartbeats
from jqsync.services.job_lock import get_locks, is_lock_active
from jqsync.services.job_runner import MONITORED_JOBS, JobRunner, get_job_runner
from jqsync.services.job_runs import get_failed_job_runs, get_job_run, get_job_run_items, get_recent_job_runs

# Rate limiting
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


@router.get("/job-runs", response_model=list[JobRunResponse])
async def list_job_runs(
    job_name: Optional[str] = Query(None, description="Filter by job name"),
    limit: int = Query(20, ge=1, le=200, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent job runs, newest first"""
    return await get_recent_job_runs(db, job_name, limit)


@router.get("/job-runs/failed", response_model=list[JobRunResponse])
async def list_failed_job_runs(
    job_name: Optional[str] = Query(None, description="Filter by job name"),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    return await get_failed_job_runs(db, job_name, limit)


@router.get("/job-runs/{run_id}")
async def get_job_run_detail(run_id: str, db: AsyncSession = Depends(get_db)):
    """Job run with its per-dataset items"""
    run = await get_job_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Job run {run_id} not found")

    items = await get_job_run_items(db, run_id)
    return {
        "job_run": JobRunResponse.model_validate(run).model_dump(mode="json"),
        "items": [
            {
                "dataset": item.dataset,
                "status": item.status,
                "row_count": item.row_count,
                "page_count": item.page_count,
                "error_message": item.error_message,
            }
            for item in items
        ],
    }


@router.get("/heartbeats", response_model=list[HeartbeatResponse])
async def list_heartbeats(db: AsyncSession = Depends(get_db)):
    return await get_all_heartbeats(db)


@router.get("/heartbeats/health", response_model=list[JobHealthResponse])
async def get_jobs_health(
    stale_hours: int = Query(settings.HEARTBEAT_STALE_HOURS, ge=1, description="Staleness threshold"),
    db: AsyncSession = Depends(get_db)
):
    """
    Health of every daily job.

    A job is unhealthy when its heartbeat is missing, older than stale_hours,
    or its last run failed.
    """
    return await check_all_jobs_health(db, MONITORED_JOBS, stale_hours)


@router.get("/locks", response_model=list[JobLockResponse])
async def list_locks(db: AsyncSession = Depends(get_db)):
    locks = await get_locks(db)
    return [
        JobLockResponse(job_name=lock.job_name, locked_until=lock.locked_until, active=is_lock_active(lock))
        for lock in locks
    ]


@router.get("/integrity", response_model=IntegrityResponse)
@limiter.limit("10/minute")
async def get_integrity(request: Request, runner: JobRunner = Depends(get_job_runner)):
    """Run the integrity probes now (advisory, never fails)"""
    return await runner.run_integrity_check()
