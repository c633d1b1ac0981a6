"""
Shared fixtures: a fresh on-disk SQLite database per test.

A file database (rather than :memory:) lets several sessions use separate
connections against the same data, which the lease tests rely on.
"""
from datetime import date, timedelta
from typing import AsyncGenerator, Iterable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from jqsync.database import Base
import jqsync.models  # noqa: F401
from jqsync.models.calendar import TradingCalendar


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed_calendar(session_factory):
    """
    Insert calendar rows for [start, end].

    Weekdays are processing days unless listed in holidays, or unless
    processing_days is given, in which case only those dates are.
    """
    async def _seed(
        start: date,
        end: date,
        holidays: Iterable[date] = (),
        processing_days: Iterable[date] = None,
    ):
        holidays = set(holidays)
        explicit = set(processing_days) if processing_days is not None else None
        async with session_factory() as db:
            day = start
            while day <= end:
                if explicit is not None:
                    is_processing = day in explicit
                else:
                    is_processing = day.weekday() < 5 and day not in holidays
                db.add(TradingCalendar(
                    calendar_date=day,
                    hol_div="1" if is_processing else "0",
                    is_processing_day=is_processing,
                ))
                day += timedelta(days=1)
            await db.commit()

    return _seed
