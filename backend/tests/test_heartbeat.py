"""
Tests for heartbeat recording and health evaluation
"""
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.models.heartbeat import JobHeartbeat
from jqsync.services.heartbeat import (
    MAX_ERROR_LENGTH,
    check_all_jobs_health,
    evaluate_health,
    get_heartbeat,
    truncate_error,
    update_heartbeat,
)


@pytest.mark.asyncio
async def test_update_heartbeat_keeps_one_row_per_job(db_session):
    await update_heartbeat(db_session, "daily_topix", "running", target_date=date(2024, 1, 12))
    await update_heartbeat(db_session, "daily_topix", "success", run_id="run-1", target_date=date(2024, 1, 12))

    count = (await db_session.execute(select(func.count()).select_from(JobHeartbeat))).scalar_one()
    heartbeat = await get_heartbeat(db_session, "daily_topix")

    assert count == 1
    assert heartbeat.last_status == "success"
    assert heartbeat.last_run_id == "run-1"
    assert heartbeat.last_target_date == date(2024, 1, 12)
    assert heartbeat.last_error is None


@pytest.mark.asyncio
async def test_update_heartbeat_truncates_long_errors(db_session):
    await update_heartbeat(db_session, "daily_topix", "failed", error="x" * 5000)

    heartbeat = await get_heartbeat(db_session, "daily_topix")
    assert len(heartbeat.last_error) == MAX_ERROR_LENGTH + 3
    assert heartbeat.last_error.endswith("...")


@pytest.mark.asyncio
async def test_update_heartbeat_never_raises():
    """A broken store is logged and swallowed"""
    db = AsyncMock(spec=AsyncSession)
    db.get_bind = MagicMock(side_effect=SQLAlchemyError("connection refused"))

    await update_heartbeat(db, "daily_topix", "success")

    db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_update_heartbeat_survives_failed_rollback():
    db = AsyncMock(spec=AsyncSession)
    db.get_bind = MagicMock(side_effect=SQLAlchemyError("connection refused"))
    db.rollback.side_effect = SQLAlchemyError("still refused")

    await update_heartbeat(db, "daily_topix", "success")


def test_truncate_error_leaves_short_messages():
    assert truncate_error(None) is None
    assert truncate_error("boom") == "boom"


class TestEvaluateHealth:
    now = datetime(2024, 1, 13, 12, 0, 0)

    def _heartbeat(self, hours_ago, status="success", error=None):
        return JobHeartbeat(
            job_name="daily_topix",
            last_seen_at=self.now - timedelta(hours=hours_ago),
            last_status=status,
            last_error=error,
        )

    def test_missing_heartbeat(self):
        health = evaluate_health("daily_topix", None, 25, self.now)
        assert health.healthy is False
        assert health.reason == "No heartbeat record found"

    def test_stale_heartbeat(self):
        health = evaluate_health("daily_topix", self._heartbeat(30), 25, self.now)
        assert health.healthy is False
        assert health.reason == "Stale: last seen 30 hours ago"

    def test_failed_last_run(self):
        health = evaluate_health("daily_topix", self._heartbeat(1, "failed", "HTTP 500"), 25, self.now)
        assert health.healthy is False
        assert health.reason == "Last run failed: HTTP 500"

    def test_recent_success_is_healthy(self):
        health = evaluate_health("daily_topix", self._heartbeat(2), 25, self.now)
        assert health.healthy is True
        assert health.reason is None


@pytest.mark.asyncio
async def test_check_all_jobs_health_reports_missing_jobs(db_session):
    await update_heartbeat(db_session, "daily_topix", "success")

    results = await check_all_jobs_health(db_session, ["daily_topix", "daily_equity_bars"], 25)
    by_name = {h.job_name: h for h in results}

    assert by_name["daily_topix"].healthy is True
    assert by_name["daily_equity_bars"].healthy is False
