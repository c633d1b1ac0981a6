"""
Job Run Log

Records every job invocation per target date. Rows are written with explicit
INSERT/UPDATE statements keyed by run_id so that a rolled-back session never
leaves a half-loaded ORM object behind.
"""
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, insert, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.exceptions import DuplicateRunError
from jqsync.models.job_run import (
    JobRun,
    JobRunItem,
    JOB_STATUS_RUNNING,
    JOB_STATUS_SUCCESS,
    JOB_STATUS_FAILED,
)
from jqsync.services.batch_writer import build_upsert
from jqsync.utils.dates import utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_SUMMARY_LENGTH = 10000
TRUNCATION_SUFFIX = "... (truncated)"


def truncate_error_summary(message: Optional[str]) -> Optional[str]:
    if message is None or len(message) <= MAX_ERROR_SUMMARY_LENGTH:
        return message
    return message[:MAX_ERROR_SUMMARY_LENGTH] + TRUNCATION_SUFFIX


async def has_successful_run(db: AsyncSession, job_name: str, target_date: date) -> bool:
    result = await db.execute(
        select(func.count())
        .select_from(JobRun)
        .where(JobRun.job_name == job_name)
        .where(JobRun.target_date == target_date)
        .where(JobRun.status == JOB_STATUS_SUCCESS)
    )
    return result.scalar_one() > 0


async def start_job_run(
    db: AsyncSession,
    job_name: str,
    target_date: Optional[date] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Insert a 'running' job run.

    Raises:
        DuplicateRunError: target_date already has a successful run for job_name
    """
    if target_date is not None and await has_successful_run(db, job_name, target_date):
        raise DuplicateRunError(f"{job_name} already succeeded for {target_date}")

    run_id = str(uuid.uuid4())
    await db.execute(
        insert(JobRun).values(
            run_id=run_id,
            job_name=job_name,
            target_date=target_date,
            status=JOB_STATUS_RUNNING,
            started_at=utc_now(),
            meta=meta,
        )
    )
    await db.commit()

    logger.info(f"Started job run {run_id} ({job_name}, target={target_date})")
    return run_id


async def complete_job_run(
    db: AsyncSession,
    run_id: str,
    status: str,
    error_message: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Move a run to its terminal status.

    If marking success collides with another successful run for the same
    target date (a concurrent duplicate), the run is recorded as failed
    instead.

    Returns:
        The status actually stored
    """
    values: Dict[str, Any] = {
        "status": status,
        "finished_at": utc_now(),
        "error_summary": truncate_error_summary(error_message),
    }
    if meta is not None:
        values["meta"] = meta

    try:
        await db.execute(update(JobRun).where(JobRun.run_id == run_id).values(**values))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if status != JOB_STATUS_SUCCESS:
            raise
        logger.warning(f"Job run {run_id}: another successful run exists for the same target date")
        values.update(
            status=JOB_STATUS_FAILED,
            error_summary="Duplicate: a successful run is already recorded for this target date",
        )
        await db.execute(update(JobRun).where(JobRun.run_id == run_id).values(**values))
        await db.commit()

    logger.info(f"Completed job run {run_id}: {values['status']}")
    return values["status"]


async def record_job_run_item(
    db: AsyncSession,
    run_id: str,
    dataset: str,
    status: str,
    row_count: Optional[int] = None,
    page_count: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    row = {
        "run_id": run_id,
        "dataset": dataset,
        "status": status,
        "row_count": row_count,
        "page_count": page_count,
        "error_message": truncate_error_summary(error_message),
        "finished_at": utc_now(),
    }
    await db.execute(build_upsert(db, JobRunItem, [row], ["run_id", "dataset"]))
    await db.commit()


async def get_job_run(db: AsyncSession, run_id: str) -> Optional[JobRun]:
    result = await db.execute(select(JobRun).where(JobRun.run_id == run_id))
    return result.scalar_one_or_none()


async def get_latest_job_run(db: AsyncSession, job_name: str) -> Optional[JobRun]:
    result = await db.execute(
        select(JobRun)
        .where(JobRun.job_name == job_name)
        .order_by(JobRun.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_recent_job_runs(
    db: AsyncSession,
    job_name: Optional[str] = None,
    limit: int = 20,
) -> List[JobRun]:
    query = select(JobRun).order_by(JobRun.started_at.desc()).limit(limit)
    if job_name:
        query = query.where(JobRun.job_name == job_name)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_failed_job_runs(
    db: AsyncSession,
    job_name: Optional[str] = None,
    limit: int = 20,
) -> List[JobRun]:
    query = (
        select(JobRun)
        .where(JobRun.status == JOB_STATUS_FAILED)
        .order_by(JobRun.started_at.desc())
        .limit(limit)
    )
    if job_name:
        query = query.where(JobRun.job_name == job_name)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_job_run_items(db: AsyncSession, run_id: str) -> List[JobRunItem]:
    result = await db.execute(
        select(JobRunItem).where(JobRunItem.run_id == run_id).order_by(JobRunItem.dataset)
    )
    return list(result.scalars().all())


class JobRunTracker:
    """Context manager for tracking one job run"""

    def __init__(
        self,
        db: AsyncSession,
        job_name: str,
        target_date: Optional[date] = None,
        meta: Optional[Dict[str, Any]] = None,
    ):
        self.db = db
        self.job_name = job_name
        self.target_date = target_date
        self.meta = dict(meta or {})
        self.run_id: Optional[str] = None
        self.status: Optional[str] = None

    async def __aenter__(self):
        """Start tracking job run"""
        self.run_id = await start_job_run(self.db, self.job_name, self.target_date, self.meta or None)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Complete tracking job run"""
        if exc_type is not None:
            # Session may be mid-transaction after a failed statement
            await self.db.rollback()
            self.status = await complete_job_run(
                self.db,
                self.run_id,
                JOB_STATUS_FAILED,
                error_message=str(exc_val) or exc_type.__name__,
                meta=self.meta or None,
            )
        else:
            self.status = await complete_job_run(
                self.db, self.run_id, JOB_STATUS_SUCCESS, meta=self.meta or None
            )

        return False  # Don't suppress exceptions

    async def record_item(
        self,
        dataset: str,
        status: str = JOB_STATUS_SUCCESS,
        row_count: Optional[int] = None,
        page_count: Optional[int] = None,
        error_message: Optional[str] = None,
    ):
        await record_job_run_item(
            self.db, self.run_id, dataset, status, row_count, page_count, error_message
        )
