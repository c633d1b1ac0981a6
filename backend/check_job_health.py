import asyncio
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from jqsync.database import AsyncSessionLocal, engine
from jqsync.services.heartbeat import check_all_jobs_health
from jqsync.services.job_runner import MONITORED_JOBS, get_job_runner
from jqsync.services.job_runs import get_failed_job_runs


async def check() -> int:
    try:
        async with AsyncSessionLocal() as db:
            health = await check_all_jobs_health(db, MONITORED_JOBS)
            failed = await get_failed_job_runs(db, limit=5)

        report = await get_job_runner().run_integrity_check()
    finally:
        await engine.dispose()

    print("Job health:\n")
    for h in health:
        status = "✅" if h.healthy else "❌"
        print(f"{status} {h.job_name}")
        print(f"  Last seen: {h.last_seen_at}")
        print(f"  Last status: {h.last_status}")
        if h.reason:
            print(f"  Reason: {h.reason}")
        print()

    if failed:
        print(f"Recent failed runs ({len(failed)}):\n")
        for run in failed:
            print(f"  {run.started_at} {run.job_name} {run.target_date}: {(run.error_summary or '')[:200]}")
        print()

    print("Integrity:")
    print(f"  Calendar: {report.calendar_min} .. {report.calendar_max} (ok={report.calendar_ok})")
    for dataset, latest in report.latest_dates.items():
        print(f"  {dataset}: latest {latest}")
    for warning in report.warnings:
        print(f"  ⚠️  {warning}")

    return 0 if all(h.healthy for h in health) and not report.warnings else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(check()))
