"""
Tests for calendar lookups
"""
from datetime import date

import pytest
import pytest_asyncio

from jqsync.utils.market_calendar import (
    check_calendar_coverage,
    get_calendar_bounds,
    get_next_processing_day,
    get_previous_processing_day,
    get_processing_day_n_days_ago,
    get_processing_days,
    is_processing_day,
    is_processing_hol_div,
)

# 2024-01-08 is Coming of Age Day
HOLIDAY = date(2024, 1, 8)


@pytest_asyncio.fixture
async def calendar(seed_calendar):
    await seed_calendar(date(2024, 1, 1), date(2024, 1, 14), holidays=[date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3), HOLIDAY])


def test_processing_hol_divs():
    assert is_processing_hol_div("1")
    assert is_processing_hol_div("2")
    assert not is_processing_hol_div("0")
    assert not is_processing_hol_div("3")
    assert not is_processing_hol_div(None)


@pytest.mark.asyncio
async def test_is_processing_day(calendar, db_session):
    assert await is_processing_day(db_session, date(2024, 1, 9)) is True
    assert await is_processing_day(db_session, HOLIDAY) is False
    assert await is_processing_day(db_session, date(2024, 1, 6)) is False
    # Not ingested yet
    assert await is_processing_day(db_session, date(2024, 2, 1)) is None


@pytest.mark.asyncio
async def test_previous_and_next_skip_holidays(calendar, db_session):
    assert await get_previous_processing_day(db_session, date(2024, 1, 9)) == date(2024, 1, 5)
    assert await get_next_processing_day(db_session, date(2024, 1, 5)) == date(2024, 1, 9)
    assert await get_previous_processing_day(db_session, date(2024, 1, 4)) is None
    assert await get_next_processing_day(db_session, date(2024, 1, 12)) is None


@pytest.mark.asyncio
async def test_processing_days_range_is_inclusive(calendar, db_session):
    days = await get_processing_days(db_session, date(2024, 1, 5), date(2024, 1, 10))
    assert days == [date(2024, 1, 5), date(2024, 1, 9), date(2024, 1, 10)]
    assert await get_processing_days(db_session, date(2024, 1, 10), date(2024, 1, 5)) == []


@pytest.mark.asyncio
async def test_processing_day_n_days_ago(calendar, db_session):
    assert await get_processing_day_n_days_ago(db_session, 1, date(2024, 1, 11)) == date(2024, 1, 10)
    assert await get_processing_day_n_days_ago(db_session, 3, date(2024, 1, 11)) == date(2024, 1, 5)
    with pytest.raises(ValueError):
        await get_processing_day_n_days_ago(db_session, 0, date(2024, 1, 11))


@pytest.mark.asyncio
async def test_coverage(calendar, db_session):
    assert await get_calendar_bounds(db_session) == (date(2024, 1, 1), date(2024, 1, 14))

    covered = await check_calendar_coverage(db_session, 5, 3, date(2024, 1, 10))
    assert covered.ok

    short = await check_calendar_coverage(db_session, 5, 10, date(2024, 1, 10))
    assert short.ok is False
    assert short.required_max == date(2024, 1, 20)


@pytest.mark.asyncio
async def test_empty_calendar_coverage(db_session):
    coverage = await check_calendar_coverage(db_session, 1, 1, date(2024, 1, 10))
    assert coverage.ok is False
    assert coverage.min_date is None
