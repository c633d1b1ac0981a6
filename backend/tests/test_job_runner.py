"""
End-to-end tests for the job runner against SQLite and a fake data source
"""
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fakes import FakeJQuantsClient, FakeNotifier, make_bar, make_master_item
from jqsync.exceptions import NonRetryableSourceError, RetryableSourceError
from jqsync.models.calendar import TradingCalendar
from jqsync.models.equity_bar import EquityBarDaily
from jqsync.models.investor_type import InvestorTypeTrading
from jqsync.models.job_run import JobRun
from jqsync.models.topix import TopixBarDaily
from jqsync.services.catch_up import CatchUpConfig
from jqsync.services.heartbeat import get_heartbeat
from jqsync.services.job_lock import acquire_lock, get_locks, is_lock_active
from jqsync.services.job_runner import JobRunner
from jqsync.services.scd_sync import ScdSynchronizer, get_current_versions, get_history

TODAY = date(2024, 1, 13)
PROCESSING = [date(2024, 1, 10), date(2024, 1, 11), date(2024, 1, 12)]


@pytest_asyncio.fixture
async def calendar(seed_calendar):
    await seed_calendar(date(2024, 1, 1), date(2024, 1, 20), processing_days=PROCESSING)


def two_page_bars():
    return {
        d: [[make_bar(d, "13010"), make_bar(d, "13050")], [make_bar(d, "72030")]]
        for d in PROCESSING
    }


class ClientFactory:
    def __init__(self, client):
        self.client = client
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.client


def make_runner(session_factory, client, notifier=None, time_budget_seconds=300):
    return JobRunner(
        session_factory=session_factory,
        client_factory=ClientFactory(client),
        notifier=notifier or FakeNotifier(),
        lock_ttl_seconds=60,
        time_budget_seconds=time_budget_seconds,
        catch_up_config=CatchUpConfig(lookback_days=30, max_batch=5),
        today_fn=lambda: TODAY,
    )


async def _runs(session_factory, job_name):
    async with session_factory() as db:
        result = await db.execute(
            select(JobRun).where(JobRun.job_name == job_name).order_by(JobRun.started_at)
        )
        return list(result.scalars().all())


async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _lock_active(session_factory, job_name):
    async with session_factory() as db:
        locks = {lock.job_name: lock for lock in await get_locks(db)}
    return job_name in locks and is_lock_active(locks[job_name])


# ============================================================================
# DAILY JOBS
# ============================================================================

@pytest.mark.asyncio
async def test_catch_up_processes_missing_days_oldest_first(session_factory, calendar):
    client = FakeJQuantsClient(bar_pages=two_page_bars())
    runner = make_runner(session_factory, client)

    result = await runner.run_job("equity_bars")

    assert result.success is True
    assert result.processed_dates == PROCESSING
    assert result.written == 9
    assert result.page_count == 6
    assert len(result.run_ids) == 3
    assert client.closed

    runs = await _runs(session_factory, "daily_equity_bars")
    assert sorted((r.target_date, r.status) for r in runs) == [(d, "success") for d in PROCESSING]
    assert await _count(session_factory, EquityBarDaily) == 9

    async with session_factory() as db:
        heartbeat = await get_heartbeat(db, "daily_equity_bars")
    assert heartbeat.last_status == "success"
    assert heartbeat.last_target_date == date(2024, 1, 12)
    assert not await _lock_active(session_factory, "daily_equity_bars")


@pytest.mark.asyncio
async def test_up_to_date_job_is_skipped(session_factory, calendar):
    client = FakeJQuantsClient(bar_pages=two_page_bars())
    runner = make_runner(session_factory, client)
    await runner.run_job("equity_bars")
    calls_before = len(client.calls)

    result = await runner.run_job("equity_bars")

    assert result.success is True
    assert result.skipped is True
    assert result.processed_dates == []
    assert result.target_date == date(2024, 1, 12)
    assert "2024-01-12 was already processed successfully" in result.warnings
    assert len(client.calls) == calls_before
    assert len(await _runs(session_factory, "daily_equity_bars")) == 3


@pytest.mark.asyncio
async def test_held_lease_skips_without_side_effects(session_factory, calendar):
    client = FakeJQuantsClient(bar_pages=two_page_bars())
    runner = make_runner(session_factory, client)
    async with session_factory() as db:
        assert (await acquire_lock(db, "daily_equity_bars", 600)).granted

    result = await runner.run_job("equity_bars")

    assert result.success is False
    assert result.skipped is True
    assert result.error == "Another invocation is already running"
    assert runner.client_factory.calls == 0
    assert await _runs(session_factory, "daily_equity_bars") == []
    async with session_factory() as db:
        assert await get_heartbeat(db, "daily_equity_bars") is None
    # The other holder's lease is untouched
    assert await _lock_active(session_factory, "daily_equity_bars")


@pytest.mark.asyncio
async def test_source_failure_is_recorded_and_notified(session_factory, calendar):
    client = FakeJQuantsClient(
        fail_with=NonRetryableSourceError("J-Quants API /equities/bars/daily returned 401", status_code=401)
    )
    notifier = FakeNotifier()
    runner = make_runner(session_factory, client, notifier)

    result = await runner.run_job("equity_bars")

    assert result.success is False
    assert result.skipped is False
    assert "returned 401" in result.error
    assert result.processed_dates == []

    runs = await _runs(session_factory, "daily_equity_bars")
    assert [(r.target_date, r.status) for r in runs] == [(date(2024, 1, 10), "failed")]
    assert "returned 401" in runs[0].error_summary
    assert result.run_ids == [runs[0].run_id]

    async with session_factory() as db:
        heartbeat = await get_heartbeat(db, "daily_equity_bars")
    assert heartbeat.last_status == "failed"
    assert "returned 401" in heartbeat.last_error

    assert len(notifier.calls) == 1
    assert notifier.calls[0]["job_name"] == "daily_equity_bars"
    assert notifier.calls[0]["run_id"] == runs[0].run_id
    assert not await _lock_active(session_factory, "daily_equity_bars")


@pytest.mark.asyncio
async def test_failed_day_is_retried_by_the_next_run(session_factory, calendar):
    failing = FakeJQuantsClient(fail_with=RetryableSourceError("returned 503", status_code=503))
    await make_runner(session_factory, failing).run_job("equity_bars")

    result = await make_runner(session_factory, FakeJQuantsClient(bar_pages=two_page_bars())).run_job("equity_bars")

    assert result.processed_dates == PROCESSING


@pytest.mark.asyncio
async def test_notifier_failure_does_not_change_outcome(session_factory, calendar):
    client = FakeJQuantsClient(fail_with=RetryableSourceError("returned 503", status_code=503))
    runner = make_runner(session_factory, client, FakeNotifier(raises=RuntimeError("mail down")))

    result = await runner.run_job("equity_bars")

    assert result.success is False
    assert result.error == "returned 503"


@pytest.mark.asyncio
async def test_explicit_target_date(session_factory, calendar):
    client = FakeJQuantsClient(topix=[
        {"Date": "2024-01-11", "O": 2450.0, "H": 2470.0, "L": 2440.0, "C": 2465.0},
        {"Date": "2024-01-12", "O": 2465.0, "H": 2480.0, "L": 2455.0, "C": 2478.0},
    ])
    runner = make_runner(session_factory, client)

    first = await runner.run_job("topix", date(2024, 1, 11))
    second = await runner.run_job("topix", date(2024, 1, 11))

    assert first.success and first.processed_dates == [date(2024, 1, 11)]
    assert first.written == 1
    assert second.success and second.skipped
    assert await _count(session_factory, TopixBarDaily) == 1


@pytest.mark.asyncio
async def test_unknown_dataset(session_factory):
    result = await make_runner(session_factory, FakeJQuantsClient()).run_job("futures")

    assert result.success is False
    assert result.error.startswith("Unknown dataset 'futures'")


@pytest.mark.asyncio
async def test_empty_calendar_is_nothing_to_do(session_factory):
    runner = make_runner(session_factory, FakeJQuantsClient())

    result = await runner.run_job("topix")

    assert result.success is True
    assert result.processed_dates == []
    assert result.warnings == ["No processing day found in calendar, nothing to do"]
    async with session_factory() as db:
        assert (await get_heartbeat(db, "daily_topix")).last_status == "success"


@pytest.mark.asyncio
async def test_time_budget_leaves_remaining_dates(session_factory, calendar):
    client = FakeJQuantsClient(bar_pages=two_page_bars())
    runner = make_runner(session_factory, client, time_budget_seconds=1e-9)

    result = await runner.run_job("equity_bars")

    assert result.success is True
    assert result.processed_dates == [date(2024, 1, 10)]
    assert result.details["remaining_dates"] == ["2024-01-11", "2024-01-12"]


@pytest.mark.asyncio
async def test_calendar_job_runs_for_today_every_time(session_factory):
    client = FakeJQuantsClient(calendar=[
        {"Date": "2024-01-12", "HolDiv": "1"},
        {"Date": "2024-01-13", "HolDiv": "0"},
        {"Date": "2024-01-15", "HolDiv": "1"},
    ])
    runner = make_runner(session_factory, client)

    first = await runner.run_job("calendar")
    second = await runner.run_job("calendar")

    assert first.success and second.success
    assert first.processed_dates == [TODAY]
    assert await _count(session_factory, TradingCalendar) == 3
    runs = await _runs(session_factory, "daily_calendar")
    assert [(r.target_date, r.status) for r in runs] == [(None, "success"), (None, "success")]


@pytest.mark.asyncio
async def test_equity_master_job_applies_history(session_factory, calendar):
    client = FakeJQuantsClient(master=[
        make_master_item(date(2024, 1, 12), "13010"),
        make_master_item(date(2024, 1, 12), "72030"),
    ])
    runner = make_runner(session_factory, client)

    result = await runner.run_job("equity_master", date(2024, 1, 12))

    assert result.success is True
    assert result.details["2024-01-12"]["inserted"] == 2
    async with session_factory() as db:
        assert [v.local_code for v in await get_current_versions(db)] == ["13010", "72030"]


@pytest.mark.asyncio
async def test_backfilled_master_day_does_not_reopen_delisted_code(session_factory, calendar):
    """01-11 is caught up after 01-12 already delisted 72030"""
    client = FakeJQuantsClient(master=[
        make_master_item(date(2024, 1, 10), "13010"),
        make_master_item(date(2024, 1, 10), "72030"),
    ])
    runner = make_runner(session_factory, client)
    await runner.run_job("equity_master", date(2024, 1, 10))
    client.master = [make_master_item(date(2024, 1, 12), "13010")]
    await runner.run_job("equity_master", date(2024, 1, 12))

    client.master = [
        make_master_item(date(2024, 1, 11), "13010"),
        make_master_item(date(2024, 1, 11), "72030"),
    ]
    result = await runner.run_job("equity_master")

    assert result.success is True
    assert result.processed_dates == [date(2024, 1, 11)]
    assert result.details["2024-01-11"]["stale_snapshot"] is True
    assert result.details["2024-01-11"]["skipped"] == 2
    async with session_factory() as db:
        assert [v.local_code for v in await get_current_versions(db)] == ["13010"]
        history = await get_history(db, "72030")
    assert [(v.valid_from, v.valid_to, v.is_current) for v in history] == [
        (date(2024, 1, 10), date(2024, 1, 12), False),
    ]


@pytest.mark.asyncio
async def test_master_close_failure_fails_the_run(session_factory, calendar, monkeypatch):
    client = FakeJQuantsClient(master=[make_master_item(date(2024, 1, 10), "13010")])
    notifier = FakeNotifier()
    runner = make_runner(session_factory, client, notifier)
    assert (await runner.run_job("equity_master", date(2024, 1, 10))).success is True

    async def failing_close(self, db, valid_to, ids):
        raise OperationalError("UPDATE equity_master", {}, Exception("database is locked"))

    monkeypatch.setattr(ScdSynchronizer, "_close_group", failing_close)
    client.master = [make_master_item(date(2024, 1, 11), "13010", market="Standard")]

    result = await runner.run_job("equity_master", date(2024, 1, 11))

    assert result.success is False
    assert "Failed to close 1 record(s)" in result.error

    runs = await _runs(session_factory, "daily_equity_master")
    assert [(r.target_date, r.status) for r in runs] == [
        (date(2024, 1, 10), "success"),
        (date(2024, 1, 11), "failed"),
    ]
    assert "Failed to close" in runs[1].error_summary

    async with session_factory() as db:
        heartbeat = await get_heartbeat(db, "daily_equity_master")
        current = await get_current_versions(db)
    assert heartbeat.last_status == "failed"
    assert "Failed to close" in heartbeat.last_error

    assert len(notifier.calls) == 1
    assert notifier.calls[0]["run_id"] == runs[1].run_id
    assert [(v.local_code, v.market_name, v.valid_from) for v in current] == [
        ("13010", "Prime", date(2024, 1, 10)),
    ]


# ============================================================================
# CHUNKED EQUITY BARS
# ============================================================================

@pytest.mark.asyncio
async def test_chunked_equity_bars_completes_on_last_page(session_factory, calendar):
    client = FakeJQuantsClient(bar_pages=two_page_bars())
    runner = make_runner(session_factory, client)
    day = date(2024, 1, 12)

    first = await runner.run_equity_bars_chunk(day)
    assert first.success is True
    assert first.continuation_token == "1"
    assert first.written == 2
    assert await _runs(session_factory, "daily_equity_bars") == []

    last = await runner.run_equity_bars_chunk(day, first.continuation_token)
    assert last.continuation_token is None
    assert last.done
    assert last.processed_dates == [day]
    runs = await _runs(session_factory, "daily_equity_bars")
    assert [(r.target_date, r.status, r.meta) for r in runs] == [(day, "success", {"mode": "chunked"})]

    again = await runner.run_equity_bars_chunk(day)
    assert again.skipped is True
    assert await _count(session_factory, EquityBarDaily) == 3


@pytest.mark.asyncio
async def test_chunk_without_date_uses_catch_up_plan(session_factory, calendar):
    runner = make_runner(session_factory, FakeJQuantsClient(bar_pages=two_page_bars()))

    result = await runner.run_equity_bars_chunk()

    assert result.target_date == date(2024, 1, 10)


@pytest.mark.asyncio
async def test_chunk_pagination_key_requires_date(session_factory):
    runner = make_runner(session_factory, FakeJQuantsClient())

    result = await runner.run_equity_bars_chunk(None, "1")

    assert result.success is False
    assert result.error == "date is required when pagination_key is provided"
    assert runner.client_factory.calls == 0


@pytest.mark.asyncio
async def test_chunk_failure_records_failed_run(session_factory, calendar):
    notifier = FakeNotifier()
    client = FakeJQuantsClient(fail_with=RetryableSourceError("returned 503", status_code=503))
    runner = make_runner(session_factory, client, notifier)

    result = await runner.run_equity_bars_chunk(date(2024, 1, 12), "3")

    assert result.success is False
    runs = await _runs(session_factory, "daily_equity_bars")
    assert [r.status for r in runs] == ["failed"]
    assert runs[0].meta == {"mode": "chunked", "pagination_key": "3"}
    assert len(notifier.calls) == 1


# ============================================================================
# WEEKLY JOB
# ============================================================================

@pytest.mark.asyncio
async def test_weekly_job_syncs_investor_types_and_reports_integrity(session_factory, calendar):
    client = FakeJQuantsClient(investor_types=[{
        "PubDate": "2024-01-11",
        "StDate": "2023-12-25",
        "EnDate": "2023-12-29",
        "Section": "TSEPrime",
        "FrgnSell": 1000.0,
        "FrgnBuy": 1200.0,
        "IndSell": 500.0,
    }])
    runner = make_runner(session_factory, client)

    result = await runner.run_weekly()

    assert result.success is True
    assert result.written == 3
    assert "integrity" in result.details
    # Calendar seeded for a few weeks only, so coverage is flagged but does not fail the job
    assert any(w.startswith("Calendar coverage insufficient") for w in result.warnings)
    assert await _count(session_factory, InvestorTypeTrading) == 3
    runs = await _runs(session_factory, "weekly_investor_types")
    assert [r.status for r in runs] == ["success"]
