#!/usr/bin/env python3
"""
Run a synchronization job from the command line.

Usage:
    python run_job.py calendar
    python run_job.py equity_bars                 # catch-up / previous business day
    python run_job.py equity_master --date 2024-02-01
    python run_job.py weekly                      # investor types + integrity check
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from jqsync.database import engine
from jqsync.services.job_runner import DAILY_JOBS, get_job_runner
from jqsync.utils.dates import parse_date

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def main(job: str, target_date=None) -> int:
    runner = get_job_runner()
    try:
        if job == "weekly":
            result = await runner.run_weekly()
        else:
            result = await runner.run_job(job, target_date)
    finally:
        await engine.dispose()

    print("="*60)
    print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))
    print("="*60)

    if result.success:
        print(f"✅ {result.job_name}: processed {[d.isoformat() for d in result.processed_dates]}")
        return 0
    if result.skipped:
        print(f"⏭️  {result.job_name}: {result.error}")
        return 0
    print(f"❌ {result.job_name}: {result.error}")
    return 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a jqsync job")
    parser.add_argument("job", choices=[*DAILY_JOBS, "weekly"], help="Dataset job to run")
    parser.add_argument("--date", type=str, default=None, help="Target date (YYYY-MM-DD)")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.job, parse_date(args.date))))
