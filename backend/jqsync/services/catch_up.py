"""
Catch-Up Planner

Finds processing days inside the lookback window that have no successful
job run yet, so a job that missed days (outage, failed runs) fills them in
oldest-first on subsequent invocations.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.models.job_run import JobRun, JOB_STATUS_SUCCESS
from jqsync.utils.dates import add_days, jst_today
from jqsync.utils.market_calendar import get_previous_processing_day, get_processing_days

logger = logging.getLogger(__name__)


@dataclass
class CatchUpConfig:
    lookback_days: int
    max_batch: int

    @classmethod
    def from_settings(cls) -> "CatchUpConfig":
        return cls(
            lookback_days=settings.SYNC_LOOKBACK_DAYS,
            max_batch=settings.SYNC_MAX_CATCHUP_DAYS,
        )


async def get_anchor_date(db: AsyncSession, today: Optional[date] = None) -> Optional[date]:
    """Most recent completed processing day: the last one strictly before today (JST)"""
    return await get_previous_processing_day(db, today or jst_today())


async def get_successful_dates(
    db: AsyncSession,
    job_name: str,
    dates: List[date],
) -> set:
    """Subset of dates with a successful run for job_name, in one query"""
    if not dates:
        return set()

    result = await db.execute(
        select(JobRun.target_date)
        .where(JobRun.job_name == job_name)
        .where(JobRun.status == JOB_STATUS_SUCCESS)
        .where(JobRun.target_date.in_(dates))
    )
    return set(result.scalars().all())


async def plan_catch_up(
    db: AsyncSession,
    job_name: str,
    config: Optional[CatchUpConfig] = None,
    today: Optional[date] = None,
) -> List[date]:
    """
    Processing days without a successful run, oldest first.

    Args:
        db: Database session
        job_name: Job whose run log is checked
        config: Lookback window and per-invocation cap
        today: Override for "today" (JST)

    Returns:
        Up to config.max_batch dates in [anchor - lookback_days, anchor].
        Empty when the calendar has no processing day before today.
    """
    config = config or CatchUpConfig.from_settings()

    anchor = await get_anchor_date(db, today)
    if anchor is None:
        logger.warning(f"{job_name}: no processing day found in calendar, nothing to plan")
        return []

    window_start = add_days(anchor, -config.lookback_days)
    processing_days = await get_processing_days(db, window_start, anchor)
    done = await get_successful_dates(db, job_name, processing_days)

    missing = [d for d in processing_days if d not in done]
    plan = missing[:config.max_batch]

    if missing:
        logger.info(
            f"{job_name}: {len(missing)} missing processing day(s) in "
            f"[{window_start}, {anchor}], planning {plan}"
        )
    return plan


async def determine_target_dates(
    db: AsyncSession,
    job_name: str,
    config: Optional[CatchUpConfig] = None,
    today: Optional[date] = None,
) -> List[date]:
    """
    Dates the next invocation should process.

    The catch-up plan when there are gaps, otherwise the anchor day alone,
    otherwise nothing (empty calendar).
    """
    plan = await plan_catch_up(db, job_name, config, today)
    if plan:
        return plan

    anchor = await get_anchor_date(db, today)
    return [anchor] if anchor else []


async def needs_catch_up(
    db: AsyncSession,
    job_name: str,
    lookback_days: int = 7,
    today: Optional[date] = None,
) -> bool:
    plan = await plan_catch_up(db, job_name, CatchUpConfig(lookback_days, 1), today)
    return bool(plan)


async def get_last_successful_date(db: AsyncSession, job_name: str) -> Optional[date]:
    result = await db.execute(
        select(func.max(JobRun.target_date))
        .where(JobRun.job_name == job_name)
        .where(JobRun.status == JOB_STATUS_SUCCESS)
    )
    return result.scalar_one_or_none()


async def find_missing_dates_in_table(
    db: AsyncSession,
    date_column,
    start: date,
    end: date,
) -> List[date]:
    """
    Processing days in [start, end] with no row in the table owning date_column.

    Complements the run log check with the data actually stored.
    """
    processing_days = await get_processing_days(db, start, end)
    if not processing_days:
        return []

    result = await db.execute(
        select(date_column).where(date_column.in_(processing_days)).distinct()
    )
    present = set(result.scalars().all())
    return [d for d in processing_days if d not in present]
