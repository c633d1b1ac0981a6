"""
Tokyo exchange calendar lookups.

Answers "is this a processing day?" and "which processing days fall in a
range?" from the stored trading_calendar table. Dates missing from the table
are unknown, not holidays: callers get None/empty results and decide what that
means.
"""
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.models.calendar import TradingCalendar, PROCESSING_HOL_DIVS
from jqsync.utils.dates import add_days, jst_today


@dataclass
class CalendarCoverage:
    ok: bool
    min_date: Optional[date]
    max_date: Optional[date]
    required_min: date
    required_max: date


def is_processing_hol_div(hol_div: Optional[str]) -> bool:
    """Business days ('1') and half-day sessions ('2') carry market data"""
    return hol_div in PROCESSING_HOL_DIVS


async def is_processing_day(db: AsyncSession, d: date) -> Optional[bool]:
    """
    Check a single date against the stored calendar.

    Returns:
        True/False, or None when the date has not been ingested yet
    """
    result = await db.execute(
        select(TradingCalendar.is_processing_day)
        .where(TradingCalendar.calendar_date == d)
    )
    value = result.scalar_one_or_none()
    return None if value is None else bool(value)


async def get_previous_processing_day(db: AsyncSession, d: date) -> Optional[date]:
    """Most recent processing day strictly before d"""
    result = await db.execute(
        select(TradingCalendar.calendar_date)
        .where(TradingCalendar.calendar_date < d)
        .where(TradingCalendar.is_processing_day.is_(True))
        .order_by(TradingCalendar.calendar_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_next_processing_day(db: AsyncSession, d: date) -> Optional[date]:
    """First processing day strictly after d"""
    result = await db.execute(
        select(TradingCalendar.calendar_date)
        .where(TradingCalendar.calendar_date > d)
        .where(TradingCalendar.is_processing_day.is_(True))
        .order_by(TradingCalendar.calendar_date.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_processing_days(db: AsyncSession, start: date, end: date) -> List[date]:
    """Processing days in [start, end], ascending"""
    if start > end:
        return []

    result = await db.execute(
        select(TradingCalendar.calendar_date)
        .where(TradingCalendar.calendar_date >= start)
        .where(TradingCalendar.calendar_date <= end)
        .where(TradingCalendar.is_processing_day.is_(True))
        .order_by(TradingCalendar.calendar_date.asc())
    )
    return list(result.scalars().all())


async def get_processing_day_n_days_ago(
    db: AsyncSession,
    n: int,
    from_date: Optional[date] = None,
) -> Optional[date]:
    """
    Walk back n processing days from from_date (exclusive).

    n=1 is the previous processing day.
    """
    if n < 1:
        raise ValueError("n must be >= 1")

    from_date = from_date or jst_today()
    result = await db.execute(
        select(TradingCalendar.calendar_date)
        .where(TradingCalendar.calendar_date < from_date)
        .where(TradingCalendar.is_processing_day.is_(True))
        .order_by(TradingCalendar.calendar_date.desc())
        .offset(n - 1)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_calendar_bounds(db: AsyncSession) -> Tuple[Optional[date], Optional[date]]:
    """Earliest and latest stored calendar dates"""
    result = await db.execute(
        select(func.min(TradingCalendar.calendar_date), func.max(TradingCalendar.calendar_date))
    )
    min_date, max_date = result.one()
    return min_date, max_date


async def check_calendar_coverage(
    db: AsyncSession,
    past_days: int,
    future_days: int,
    today: Optional[date] = None,
) -> CalendarCoverage:
    """
    Check that the stored calendar spans [today - past_days, today + future_days].
    """
    today = today or jst_today()
    required_min = add_days(today, -past_days)
    required_max = add_days(today, future_days)

    min_date, max_date = await get_calendar_bounds(db)
    ok = (
        min_date is not None
        and max_date is not None
        and min_date <= required_min
        and max_date >= required_max
    )

    return CalendarCoverage(
        ok=ok,
        min_date=min_date,
        max_date=max_date,
        required_min=required_min,
        required_max=required_max,
    )
