#!/usr/bin/env python3
"""
Drive the chunked equity bars job until every page is stored.

Each iteration is one bounded invocation; the continuation token returned by
one call is passed to the next. Intended for schedulers with short execution
limits, where the HTTP variant (/api/cron/equity-bars/chunk) is called the
same way.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from jqsync.database import engine
from jqsync.services.job_runner import get_job_runner
from jqsync.utils.dates import parse_date

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def main(target_date=None, max_iterations: int = 1000) -> int:
    runner = get_job_runner()
    pagination_key = None
    total_fetched = 0
    total_written = 0

    print("="*60)
    print(f"Chunked equity bars sync (date: {target_date or 'auto'})")
    print("="*60)

    try:
        for iteration in range(1, max_iterations + 1):
            result = await runner.run_equity_bars_chunk(target_date, pagination_key)

            if not result.success:
                print(f"❌ Page {iteration} failed: {result.error}")
                return 1

            total_fetched += result.fetched
            total_written += result.written
            target_date = result.target_date
            print(f"  Page {iteration}: fetched={result.fetched} written={result.written}")

            if result.skipped or not result.continuation_token:
                break
            pagination_key = result.continuation_token
        else:
            print(f"⚠️  Stopped after {max_iterations} iterations with pages remaining")
            return 1
    finally:
        await engine.dispose()

    print()
    print(f"✅ {target_date}: fetched={total_fetched} written={total_written}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync daily equity bars one page per invocation")
    parser.add_argument("--date", type=str, default=None, help="Trade date (YYYY-MM-DD)")
    parser.add_argument("--max-iterations", type=int, default=1000)
    args = parser.parse_args()

    sys.exit(asyncio.run(main(parse_date(args.date), args.max_iterations)))
