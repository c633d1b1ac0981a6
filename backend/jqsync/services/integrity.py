"""
Integrity Checker

Advisory cross-dataset probes: calendar coverage, per-dataset freshness and
heartbeat health. Probes run concurrently, each with its own session. Problems
become warnings; the check itself never fails its caller.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.models.equity_bar import EquityBarDaily
from jqsync.models.topix import TopixBarDaily
from jqsync.services.heartbeat import check_all_jobs_health
from jqsync.utils.dates import add_days, jst_today
from jqsync.utils.market_calendar import check_calendar_coverage

logger = logging.getLogger(__name__)

# Dataset name -> date column whose maximum is the dataset's freshness
FRESHNESS_COLUMNS = {
    "equity_bars": EquityBarDaily.trade_date,
    "topix": TopixBarDaily.trade_date,
}


@dataclass
class IntegrityConfig:
    calendar_window_days: int = 370
    freshness_thresholds: Dict[str, int] = field(default_factory=dict)
    stale_hours: int = 25
    job_names: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, job_names: Optional[List[str]] = None) -> "IntegrityConfig":
        return cls(
            calendar_window_days=settings.CALENDAR_WINDOW_DAYS,
            freshness_thresholds=dict(settings.FRESHNESS_THRESHOLD_DAYS),
            stale_hours=settings.HEARTBEAT_STALE_HOURS,
            job_names=list(job_names or []),
        )


@dataclass
class IntegrityReport:
    calendar_ok: bool = False
    calendar_min: Optional[date] = None
    calendar_max: Optional[date] = None
    latest_dates: Dict[str, Optional[date]] = field(default_factory=dict)
    unhealthy_jobs: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


async def get_latest_date(db: AsyncSession, date_column) -> Optional[date]:
    result = await db.execute(select(func.max(date_column)))
    return result.scalar_one_or_none()


async def _probe_calendar(db: AsyncSession, config: IntegrityConfig, today: date, report: IntegrityReport):
    coverage = await check_calendar_coverage(
        db, config.calendar_window_days, config.calendar_window_days, today
    )
    report.calendar_ok = coverage.ok
    report.calendar_min = coverage.min_date
    report.calendar_max = coverage.max_date

    if not coverage.ok:
        report.warnings.append(
            f"Calendar coverage insufficient: stored {coverage.min_date}..{coverage.max_date}, "
            f"required {coverage.required_min}..{coverage.required_max}"
        )


async def _probe_freshness(
    db: AsyncSession,
    dataset: str,
    threshold_days: int,
    today: date,
    report: IntegrityReport,
):
    column = FRESHNESS_COLUMNS.get(dataset)
    if column is None:
        report.warnings.append(f"No freshness probe defined for dataset '{dataset}'")
        return

    latest = await get_latest_date(db, column)
    report.latest_dates[dataset] = latest

    if latest is None:
        report.warnings.append(f"{dataset}: no data stored")
    elif latest < add_days(today, -threshold_days):
        report.warnings.append(
            f"{dataset}: latest date {latest} is older than {threshold_days} day(s)"
        )


async def _probe_heartbeats(db: AsyncSession, config: IntegrityConfig, report: IntegrityReport):
    for health in await check_all_jobs_health(db, config.job_names, config.stale_hours):
        if not health.healthy:
            report.unhealthy_jobs.append(health.job_name)
            report.warnings.append(f"{health.job_name}: {health.reason}")


async def _run_probe(
    name: str,
    session_factory: Callable[[], Any],
    probe: Callable[[AsyncSession], Awaitable[None]],
    report: IntegrityReport,
):
    try:
        async with session_factory() as db:
            await probe(db)
    except Exception as e:
        logger.error(f"Integrity probe '{name}' failed: {e}")
        report.warnings.append(f"Integrity probe '{name}' failed: {e}")


async def run_integrity_check(
    session_factory: Callable[[], Any],
    config: Optional[IntegrityConfig] = None,
    today: Optional[date] = None,
) -> IntegrityReport:
    """
    Run all probes concurrently.

    Args:
        session_factory: Callable returning an async session context manager
        config: Coverage window, freshness thresholds and monitored job names
        today: Override for "today" (JST)

    Returns:
        IntegrityReport; warnings is empty when everything is consistent
    """
    config = config or IntegrityConfig.from_settings()
    today = today or jst_today()
    report = IntegrityReport()

    probes = [
        _run_probe(
            "calendar",
            session_factory,
            lambda db: _probe_calendar(db, config, today, report),
            report,
        )
    ]
    for dataset, threshold in config.freshness_thresholds.items():
        probes.append(
            _run_probe(
                f"freshness:{dataset}",
                session_factory,
                lambda db, dataset=dataset, threshold=threshold: _probe_freshness(
                    db, dataset, threshold, today, report
                ),
                report,
            )
        )
    if config.job_names:
        probes.append(
            _run_probe(
                "heartbeats",
                session_factory,
                lambda db: _probe_heartbeats(db, config, report),
                report,
            )
        )

    await asyncio.gather(*probes)

    if report.warnings:
        logger.warning(f"Integrity check: {len(report.warnings)} warning(s): {report.warnings}")
    else:
        logger.info("Integrity check passed")
    return report
