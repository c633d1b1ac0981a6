"""
Cron API Endpoints

Thin HTTP triggers for synchronization jobs. Authenticated with
`Authorization: Bearer <CRON_SECRET>`; all work is done by JobRunner.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from jqsync.config import settings
from jqsync.schemas.jobs import DailyJobRequest, EquityBarsChunkRequest, JobResult
from jqsync.services.job_runner import DAILY_JOBS, JobRunner, get_job_runner

# Rate limiting
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    """Reject requests without the shared cron bearer secret"""
    if not settings.CRON_SECRET:
        logger.error("CRON_SECRET is not configured, rejecting cron request")
        raise HTTPException(status_code=500, detail="CRON_SECRET is not configured")

    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not secrets.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def to_response(result: JobResult) -> JSONResponse:
    """200 on success, 409 when the lease is held elsewhere, 500 on failure"""
    if result.success:
        status_code = 200
    elif result.skipped:
        status_code = 409
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.post("/daily/{dataset}", dependencies=[Depends(verify_cron_secret)])
@limiter.limit("30/minute")
async def run_daily_job(
    request: Request,
    dataset: str,
    body: Optional[DailyJobRequest] = None,
    runner: JobRunner = Depends(get_job_runner),
):
    """
    Run the daily sync for one dataset.

    Without target_date the job catches up missed processing days (oldest
    first) or processes the previous processing day.
    """
    if dataset not in DAILY_JOBS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown dataset '{dataset}'. Expected one of: {', '.join(DAILY_JOBS)}",
        )

    target_date = body.target_date if body else None
    result = await runner.run_job(dataset, target_date)
    return to_response(result)


@router.post("/equity-bars/chunk", dependencies=[Depends(verify_cron_secret)])
@limiter.limit("120/minute")
async def run_equity_bars_chunk(
    request: Request,
    body: Optional[EquityBarsChunkRequest] = None,
    runner: JobRunner = Depends(get_job_runner),
):
    """
    Process one page of daily equity bars.

    Call again with the returned continuation_token (and the same date) until
    it is null.
    """
    body = body or EquityBarsChunkRequest()
    result = await runner.run_equity_bars_chunk(body.trade_date, body.pagination_key)
    return to_response(result)


@router.post("/weekly", dependencies=[Depends(verify_cron_secret)])
@limiter.limit("10/minute")
async def run_weekly_job(
    request: Request,
    runner: JobRunner = Depends(get_job_runner),
):
    """Investor types window sync plus integrity check"""
    result = await runner.run_weekly()
    return to_response(result)
