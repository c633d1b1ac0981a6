"""
Heartbeat Recorder

One row per job with the last observed status. Writes are best-effort: a
failed heartbeat is logged and never interrupts the job that reported it.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.models.heartbeat import JobHeartbeat
from jqsync.models.job_run import JOB_STATUS_FAILED
from jqsync.services.batch_writer import build_upsert
from jqsync.utils.dates import utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass
class JobHealth:
    job_name: str
    healthy: bool
    reason: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    last_status: Optional[str] = None


def truncate_error(error: Optional[str], limit: int = MAX_ERROR_LENGTH) -> Optional[str]:
    if error is None or len(error) <= limit:
        return error
    return error[:limit] + "..."


async def update_heartbeat(
    db: AsyncSession,
    job_name: str,
    status: str,
    run_id: Optional[str] = None,
    target_date: Optional[date] = None,
    error: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """Upsert the heartbeat row for job_name; never raises"""
    row = {
        "job_name": job_name,
        "last_seen_at": utc_now(),
        "last_status": status,
        "last_run_id": run_id,
        "last_target_date": target_date,
        "last_error": truncate_error(error),
        "meta": meta,
    }

    try:
        await db.execute(build_upsert(db, JobHeartbeat, [row], ["job_name"]))
        await db.commit()
        logger.debug(f"Heartbeat {job_name}: {status}")
    except Exception as e:
        logger.error(f"Failed to update heartbeat for {job_name}: {e}")
        try:
            await db.rollback()
        except Exception as rollback_error:
            logger.error(f"Heartbeat rollback failed for {job_name}: {rollback_error}")


async def get_heartbeat(db: AsyncSession, job_name: str) -> Optional[JobHeartbeat]:
    result = await db.execute(select(JobHeartbeat).where(JobHeartbeat.job_name == job_name))
    return result.scalar_one_or_none()


async def get_all_heartbeats(db: AsyncSession) -> List[JobHeartbeat]:
    result = await db.execute(select(JobHeartbeat).order_by(JobHeartbeat.job_name))
    return list(result.scalars().all())


def evaluate_health(
    job_name: str,
    heartbeat: Optional[JobHeartbeat],
    stale_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> JobHealth:
    """
    Classify a heartbeat.

    Unhealthy when missing, older than stale_hours, or when the last run
    failed. Staleness is checked first.
    """
    stale_hours = stale_hours or settings.HEARTBEAT_STALE_HOURS
    now = now or utc_now()

    if heartbeat is None:
        return JobHealth(job_name=job_name, healthy=False, reason="No heartbeat record found")

    hours_since = (now - heartbeat.last_seen_at).total_seconds() / 3600
    if hours_since > stale_hours:
        return JobHealth(
            job_name=job_name,
            healthy=False,
            reason=f"Stale: last seen {int(hours_since)} hours ago",
            last_seen_at=heartbeat.last_seen_at,
            last_status=heartbeat.last_status,
        )

    if heartbeat.last_status == JOB_STATUS_FAILED:
        return JobHealth(
            job_name=job_name,
            healthy=False,
            reason=f"Last run failed: {heartbeat.last_error or 'unknown error'}",
            last_seen_at=heartbeat.last_seen_at,
            last_status=heartbeat.last_status,
        )

    return JobHealth(
        job_name=job_name,
        healthy=True,
        last_seen_at=heartbeat.last_seen_at,
        last_status=heartbeat.last_status,
    )


async def check_all_jobs_health(
    db: AsyncSession,
    job_names: List[str],
    stale_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[JobHealth]:
    """Health of each named job (missing heartbeats count as unhealthy)"""
    heartbeats = {hb.job_name: hb for hb in await get_all_heartbeats(db)}
    return [
        evaluate_health(name, heartbeats.get(name), stale_hours, now)
        for name in job_names
    ]
