"""
Lease Lock Manager

Exclusivity per job name is stored as a row in job_locks instead of a
session/advisory lock, because pooled connections may be shared between
callers. A lease is granted by a single conditional upsert that only
overwrites an expired row; the caller then reads the row back and owns the
lease only if its own fresh token was persisted.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.models.job_lock import JobLock
from jqsync.services.batch_writer import dialect_insert
from jqsync.utils.dates import utc_now

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    granted: bool
    token: Optional[str] = None
    locked_until: Optional[datetime] = None
    error: Optional[str] = None


async def acquire_lock(
    db: AsyncSession,
    job_name: str,
    ttl_seconds: Optional[int] = None,
) -> LockResult:
    """
    Try to take the lease for job_name.

    Granted when no row exists or the stored lease has expired. Not being
    granted is a normal outcome (another invocation is active), as is a
    storage failure, which is reported through LockResult.error.

    Args:
        db: Database session
        job_name: Lease name
        ttl_seconds: Lease duration (default JOB_LOCK_TTL_SECONDS)

    Returns:
        LockResult; token is set only when granted
    """
    ttl = settings.JOB_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    token = str(uuid.uuid4())
    now = utc_now()
    locked_until = now + timedelta(seconds=ttl)

    try:
        insert = dialect_insert(db)
        stmt = insert(JobLock).values(
            job_name=job_name,
            locked_until=locked_until,
            lock_token=token,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_name"],
            set_={
                "locked_until": stmt.excluded.locked_until,
                "lock_token": stmt.excluded.lock_token,
                "updated_at": stmt.excluded.updated_at,
            },
            where=JobLock.locked_until <= now,
        )
        await db.execute(stmt)
        await db.commit()

        result = await db.execute(
            select(JobLock.lock_token, JobLock.locked_until).where(JobLock.job_name == job_name)
        )
        row = result.one_or_none()
        await db.commit()

    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to acquire lock for {job_name}: {e}")
        return LockResult(granted=False, error=str(e))

    if row is None or row.lock_token != token:
        held_until = row.locked_until if row else None
        logger.info(f"Lock for {job_name} is held until {held_until}")
        return LockResult(granted=False, locked_until=held_until)

    logger.info(f"Acquired lock for {job_name} until {locked_until}")
    return LockResult(granted=True, token=token, locked_until=locked_until)


async def release_lock(db: AsyncSession, job_name: str, token: str) -> bool:
    """
    Expire the lease if token still owns it.

    A stale token (lease expired and re-acquired by someone else) changes
    nothing. Failures are logged only; an unreleased lease expires on its own.

    Returns:
        True when the lease was released by this call
    """
    now = utc_now()
    try:
        result = await db.execute(
            update(JobLock)
            .where(JobLock.job_name == job_name)
            .where(JobLock.lock_token == token)
            .values(locked_until=now - timedelta(seconds=1), updated_at=now)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Failed to release lock for {job_name}: {e}")
        return False

    released = result.rowcount == 1
    if released:
        logger.info(f"Released lock for {job_name}")
    else:
        logger.warning(f"Lock for {job_name} is no longer owned by this token; nothing released")
    return released


async def extend_lock(
    db: AsyncSession,
    job_name: str,
    token: str,
    ttl_seconds: Optional[int] = None,
) -> bool:
    """
    Push locked_until to now + ttl while token owns an unexpired lease.

    Returns:
        True when extended
    """
    ttl = settings.JOB_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    now = utc_now()
    try:
        result = await db.execute(
            update(JobLock)
            .where(JobLock.job_name == job_name)
            .where(JobLock.lock_token == token)
            .where(JobLock.locked_until > now)
            .values(locked_until=now + timedelta(seconds=ttl), updated_at=now)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Failed to extend lock for {job_name}: {e}")
        return False

    return result.rowcount == 1


async def get_locks(db: AsyncSession) -> List[JobLock]:
    result = await db.execute(select(JobLock).order_by(JobLock.job_name))
    return list(result.scalars().all())


def is_lock_active(lock: JobLock, now: Optional[datetime] = None) -> bool:
    return lock.locked_until > (now or utc_now())
