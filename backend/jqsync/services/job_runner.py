"""
Job Runner

Entry point for every synchronization job. One call is one bounded unit of
work:

    acquire lease -> choose target date(s) -> sync -> run log + heartbeat
    -> (on failure) notify -> release lease

Every path returns a JobResult. Exceptions raised by the data source, the
writers or the store are converted into a failed result here.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.database import AsyncSessionLocal
from jqsync.exceptions import DuplicateRunError, PartialWriteError
from jqsync.models.job_run import JOB_STATUS_FAILED, JOB_STATUS_RUNNING, JOB_STATUS_SUCCESS
from jqsync.schemas.jobs import JobResult
from jqsync.services.catch_up import CatchUpConfig, determine_target_dates
from jqsync.services.datasets import (
    SyncResult,
    sync_equity_bars,
    sync_equity_bars_page,
    sync_equity_master,
    sync_investor_types,
    sync_topix,
    sync_trading_calendar,
)
from jqsync.services.heartbeat import update_heartbeat
from jqsync.services.integrity import IntegrityConfig, IntegrityReport, run_integrity_check
from jqsync.services.job_lock import acquire_lock, extend_lock, release_lock
from jqsync.services.job_runs import (
    JobRunTracker,
    complete_job_run,
    has_successful_run,
    record_job_run_item,
    start_job_run,
)
from jqsync.services.notification import get_notifier
from jqsync.utils.dates import jst_today
from jqsync.utils.jquants_client import JQuantsClient

logger = logging.getLogger(__name__)

SyncFunction = Callable[[AsyncSession, JQuantsClient, date], Awaitable[SyncResult]]


@dataclass(frozen=True)
class JobDefinition:
    name: str
    dataset: str
    sync: SyncFunction
    catch_up: bool = True  # False: always runs for "today" and is not tracked per date


DAILY_JOBS: Dict[str, JobDefinition] = {
    "calendar": JobDefinition("daily_calendar", "calendar", sync_trading_calendar, catch_up=False),
    "equity_bars": JobDefinition("daily_equity_bars", "equity_bars", sync_equity_bars),
    "topix": JobDefinition("daily_topix", "topix", sync_topix),
    "equity_master": JobDefinition("daily_equity_master", "equity_master", sync_equity_master),
}

WEEKLY_JOB_NAME = "weekly_investor_types"

# Jobs expected to report at least once a day
MONITORED_JOBS: List[str] = [job.name for job in DAILY_JOBS.values()]


class JobRunner:
    """Runs jobs against the shared store; collaborators are injectable for tests."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        client_factory: Optional[Callable[[], JQuantsClient]] = None,
        notifier=None,
        lock_ttl_seconds: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        catch_up_config: Optional[CatchUpConfig] = None,
        today_fn: Callable[[], date] = jst_today,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.client_factory = client_factory or JQuantsClient
        self.notifier = notifier or get_notifier()
        self.lock_ttl_seconds = (
            settings.JOB_LOCK_TTL_SECONDS if lock_ttl_seconds is None else lock_ttl_seconds
        )
        self.time_budget_seconds = (
            settings.JOB_TIME_BUDGET_SECONDS if time_budget_seconds is None else time_budget_seconds
        )
        self.catch_up_config = catch_up_config or CatchUpConfig.from_settings()
        self.today_fn = today_fn

    # ============================================================================
    # PUBLIC ENTRY POINTS
    # ============================================================================

    async def run_job(self, dataset: str, target_date: Optional[date] = None) -> JobResult:
        """
        Run the daily job for a dataset.

        Args:
            dataset: One of DAILY_JOBS ("calendar", "equity_bars", "topix", "equity_master")
            target_date: Explicit date; None plans catch-up dates or falls back to
                the previous processing day

        Returns:
            JobResult (skipped=True when another invocation holds the lease)
        """
        definition = DAILY_JOBS.get(dataset)
        if definition is None:
            return JobResult(
                success=False,
                job_name=f"daily_{dataset}",
                dataset=dataset,
                error=f"Unknown dataset '{dataset}'. Expected one of: {', '.join(DAILY_JOBS)}",
            )

        return await self._with_lease(
            definition.name,
            definition.dataset,
            lambda token: self._run_daily(definition, target_date, token),
        )

    async def run_equity_bars_chunk(
        self,
        target_date: Optional[date] = None,
        pagination_key: Optional[str] = None,
    ) -> JobResult:
        """
        Process one page of daily equity bars.

        The returned continuation_token must be passed back (with the same
        target_date) until it comes back as None; the last page records the
        successful run for the date.
        """
        definition = DAILY_JOBS["equity_bars"]
        if pagination_key and target_date is None:
            return JobResult(
                success=False,
                job_name=definition.name,
                dataset=definition.dataset,
                error="date is required when pagination_key is provided",
            )

        return await self._with_lease(
            definition.name,
            definition.dataset,
            lambda token: self._run_chunk(definition, target_date, pagination_key),
        )

    async def run_weekly(self) -> JobResult:
        """Investor types sliding-window sync and the integrity check, in parallel"""
        return await self._with_lease(WEEKLY_JOB_NAME, "investor_types", self._run_weekly)

    async def run_integrity_check(self) -> IntegrityReport:
        return await run_integrity_check(
            self.session_factory,
            IntegrityConfig.from_settings(MONITORED_JOBS),
            self.today_fn(),
        )

    # ============================================================================
    # LEASE HANDLING
    # ============================================================================

    async def _with_lease(
        self,
        job_name: str,
        dataset: str,
        body: Callable[[str], Awaitable[JobResult]],
    ) -> JobResult:
        try:
            async with self.session_factory() as db:
                lock = await acquire_lock(db, job_name, self.lock_ttl_seconds)
        except Exception as e:
            logger.error(f"{job_name}: could not open session for lock: {e}")
            return JobResult(success=False, job_name=job_name, dataset=dataset, error=f"Failed to acquire lock: {e}")

        if not lock.granted:
            if lock.error:
                return JobResult(
                    success=False,
                    job_name=job_name,
                    dataset=dataset,
                    error=f"Failed to acquire lock: {lock.error}",
                )
            logger.info(f"{job_name}: another invocation holds the lock, skipping")
            return JobResult(
                success=False,
                skipped=True,
                job_name=job_name,
                dataset=dataset,
                error="Another invocation is already running",
            )

        try:
            return await body(lock.token)
        except Exception as e:
            logger.exception(f"{job_name}: unexpected error")
            return JobResult(success=False, job_name=job_name, dataset=dataset, error=str(e) or type(e).__name__)
        finally:
            try:
                async with self.session_factory() as db:
                    await release_lock(db, job_name, lock.token)
            except Exception as e:
                logger.warning(f"{job_name}: lock release failed, it will expire on its own: {e}")

    async def _extend_lease(self, job_name: str, token: str):
        async with self.session_factory() as db:
            if not await extend_lock(db, job_name, token, self.lock_ttl_seconds):
                logger.warning(f"{job_name}: could not extend lease")

    # ============================================================================
    # DAILY JOBS
    # ============================================================================

    async def _run_daily(self, definition: JobDefinition, target_date: Optional[date], token: str) -> JobResult:
        result = JobResult(success=True, job_name=definition.name, dataset=definition.dataset)
        today = self.today_fn()

        if not definition.catch_up:
            targets = [target_date or today]
        else:
            async with self.session_factory() as db:
                if target_date is not None:
                    targets = [target_date]
                else:
                    targets = await determine_target_dates(db, definition.name, self.catch_up_config, today)
                # Either the explicit date or the anchor fallback (no gaps left)
                already_done = len(targets) == 1 and await has_successful_run(db, definition.name, targets[0])

            if already_done:
                result.target_date = targets[0]
                result.skipped = True
                result.warnings.append(f"{targets[0]} was already processed successfully")
                await self._heartbeat(
                    definition.name, JOB_STATUS_SUCCESS, target_date=targets[0], meta={"reason": "up to date"}
                )
                return result

        if not targets:
            result.warnings.append("No processing day found in calendar, nothing to do")
            await self._heartbeat(definition.name, JOB_STATUS_SUCCESS, meta={"reason": "empty calendar"})
            return result

        result.target_date = targets[0]
        started = time.monotonic()
        client = self.client_factory()
        try:
            for index, day in enumerate(targets):
                if index > 0:
                    if time.monotonic() - started > self.time_budget_seconds:
                        remaining = [d.isoformat() for d in targets[index:]]
                        result.details["remaining_dates"] = remaining
                        result.warnings.append(f"Time budget reached, {len(remaining)} date(s) left for the next run")
                        break
                    await self._extend_lease(definition.name, token)

                if not await self._process_date(definition, client, day, result):
                    break
        finally:
            await client.close()

        return result

    async def _process_date(
        self,
        definition: JobDefinition,
        client: JQuantsClient,
        day: date,
        result: JobResult,
    ) -> bool:
        """Sync one date; returns False (and fills result.error) on failure"""
        run_date = day if definition.catch_up else None
        tracker: Optional[JobRunTracker] = None

        await self._heartbeat(definition.name, JOB_STATUS_RUNNING, target_date=day)
        try:
            async with self.session_factory() as db:
                tracker = JobRunTracker(db, definition.name, run_date, meta={"dataset": definition.dataset})
                async with tracker:
                    synced = await definition.sync(db, client, day)
                    if synced.errors:
                        raise PartialWriteError(synced.errors, synced.written)
                    tracker.meta.update(_run_meta(synced))
                    await tracker.record_item(
                        definition.dataset,
                        row_count=synced.written,
                        page_count=synced.page_count,
                    )
        except Exception as e:
            run_id = tracker.run_id if tracker else None
            await self._fail(result, definition.name, definition.dataset, run_id, day, e)
            return False

        if tracker.status != JOB_STATUS_SUCCESS:
            await self._fail(
                result, definition.name, definition.dataset, tracker.run_id, day,
                DuplicateRunError(f"{definition.name} already succeeded for {day}"),
            )
            return False

        result.processed_dates.append(day)
        result.fetched += synced.fetched
        result.written += synced.written
        result.page_count += synced.page_count
        result.run_ids.append(tracker.run_id)
        if synced.details:
            result.details[day.isoformat()] = synced.details

        await self._heartbeat(definition.name, JOB_STATUS_SUCCESS, run_id=tracker.run_id, target_date=day)
        return True

    # ============================================================================
    # CHUNKED EQUITY BARS
    # ============================================================================

    async def _run_chunk(
        self,
        definition: JobDefinition,
        target_date: Optional[date],
        pagination_key: Optional[str],
    ) -> JobResult:
        result = JobResult(success=True, job_name=definition.name, dataset=definition.dataset)

        if target_date is None:
            async with self.session_factory() as db:
                targets = await determine_target_dates(
                    db, definition.name, self.catch_up_config, self.today_fn()
                )
            if not targets:
                result.warnings.append("No processing day found in calendar, nothing to do")
                return result
            target_date = targets[0]

        result.target_date = target_date

        if pagination_key is None:
            async with self.session_factory() as db:
                already_done = await has_successful_run(db, definition.name, target_date)
            if already_done:
                result.skipped = True
                result.warnings.append(f"{target_date} was already processed successfully")
                return result

        await self._heartbeat(
            definition.name, JOB_STATUS_RUNNING, target_date=target_date,
            meta={"pagination_key": pagination_key},
        )

        client = self.client_factory()
        try:
            async with self.session_factory() as db:
                page = await sync_equity_bars_page(db, client, target_date, pagination_key)
        except Exception as e:
            run_id = await self._record_failed_run(definition.name, target_date, e, pagination_key)
            await self._fail(result, definition.name, definition.dataset, run_id, target_date, e)
            return result
        finally:
            await client.close()

        result.fetched = page.fetched
        result.written = page.written
        result.page_count = 1
        result.continuation_token = page.next_token

        if page.next_token:
            await self._heartbeat(
                definition.name, JOB_STATUS_RUNNING, target_date=target_date,
                meta={"pagination_key": page.next_token},
            )
            return result

        # Last page: the date is complete
        try:
            async with self.session_factory() as db:
                run_id = await start_job_run(db, definition.name, target_date, meta={"mode": "chunked"})
                await record_job_run_item(db, run_id, definition.dataset, JOB_STATUS_SUCCESS, row_count=page.written, page_count=1)
                await complete_job_run(db, run_id, JOB_STATUS_SUCCESS)
        except DuplicateRunError as e:
            result.warnings.append(str(e))
            return result

        result.processed_dates.append(target_date)
        result.run_ids.append(run_id)
        await self._heartbeat(definition.name, JOB_STATUS_SUCCESS, run_id=run_id, target_date=target_date)
        return result

    async def _record_failed_run(
        self,
        job_name: str,
        target_date: date,
        error: Exception,
        pagination_key: Optional[str],
    ) -> Optional[str]:
        try:
            async with self.session_factory() as db:
                run_id = await start_job_run(
                    db, job_name, target_date,
                    meta={"mode": "chunked", "pagination_key": pagination_key},
                )
                await complete_job_run(db, run_id, JOB_STATUS_FAILED, error_message=str(error))
                return run_id
        except Exception as e:
            logger.error(f"{job_name}: failed to record failed run: {e}")
            return None

    # ============================================================================
    # WEEKLY JOB
    # ============================================================================

    async def _run_weekly(self, token: str) -> JobResult:
        result = JobResult(success=True, job_name=WEEKLY_JOB_NAME, dataset="investor_types")
        today = self.today_fn()
        result.target_date = today
        holder: Dict[str, JobRunTracker] = {}

        async def sync_part() -> SyncResult:
            async with self.session_factory() as db:
                tracker = JobRunTracker(db, WEEKLY_JOB_NAME, None, meta={"dataset": "investor_types"})
                holder["tracker"] = tracker
                async with tracker:
                    synced = await sync_investor_types(db, client, today)
                    if synced.errors:
                        raise PartialWriteError(synced.errors, synced.written)
                    tracker.meta.update(_run_meta(synced))
                    await tracker.record_item("investor_types", row_count=synced.written, page_count=synced.page_count)
                return synced

        await self._heartbeat(WEEKLY_JOB_NAME, JOB_STATUS_RUNNING, target_date=today)
        client = self.client_factory()
        try:
            synced, report = await asyncio.gather(
                sync_part(),
                self.run_integrity_check(),
                return_exceptions=True,
            )
        finally:
            await client.close()

        if isinstance(report, IntegrityReport):
            result.warnings.extend(report.warnings)
            result.details["integrity"] = {
                "calendar_ok": report.calendar_ok,
                "calendar_min": report.calendar_min.isoformat() if report.calendar_min else None,
                "calendar_max": report.calendar_max.isoformat() if report.calendar_max else None,
                "latest_dates": {k: v.isoformat() if v else None for k, v in report.latest_dates.items()},
            }
        else:
            result.warnings.append(f"Integrity check failed to run: {report}")

        tracker = holder.get("tracker")
        run_id = tracker.run_id if tracker else None
        if isinstance(synced, BaseException):
            await self._fail(result, WEEKLY_JOB_NAME, "investor_types", run_id, today, synced)
            return result

        result.fetched = synced.fetched
        result.written = synced.written
        result.page_count = synced.page_count
        result.processed_dates.append(today)
        if run_id:
            result.run_ids.append(run_id)
        await self._heartbeat(
            WEEKLY_JOB_NAME, JOB_STATUS_SUCCESS, run_id=run_id, target_date=today,
            meta={"warnings": len(result.warnings)},
        )
        return result

    # ============================================================================
    # HELPERS
    # ============================================================================

    async def _heartbeat(self, job_name: str, status: str, **kwargs):
        async with self.session_factory() as db:
            await update_heartbeat(db, job_name, status, **kwargs)

    async def _fail(
        self,
        result: JobResult,
        job_name: str,
        dataset: str,
        run_id: Optional[str],
        target_date: Optional[date],
        error: BaseException,
    ):
        message = str(error) or type(error).__name__
        logger.error(f"{job_name} failed for {target_date}: {message}")

        result.success = False
        result.error = message
        if run_id:
            result.run_ids.append(run_id)

        await self._heartbeat(job_name, JOB_STATUS_FAILED, run_id=run_id, target_date=target_date, error=message)

        try:
            await self.notifier.notify_failure(
                job_name,
                run_id,
                message,
                {"dataset": dataset, "target_date": target_date},
            )
        except Exception as e:
            logger.error(f"{job_name}: failure notification raised: {e}")


def _run_meta(synced: SyncResult) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"fetched": synced.fetched, "written": synced.written}
    if synced.effective_date:
        meta["effective_date"] = synced.effective_date.isoformat()
    return meta


_job_runner: Optional[JobRunner] = None


def get_job_runner() -> JobRunner:
    """Get singleton JobRunner instance"""
    global _job_runner
    if _job_runner is None:
        _job_runner = JobRunner()
    return _job_runner


async def run_job(dataset: str, target_date: Optional[date] = None) -> JobResult:
    return await get_job_runner().run_job(dataset, target_date)
