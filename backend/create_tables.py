#!/usr/bin/env python3
"""
Create all database tables for jqsync

Run this after PostgreSQL is set up and DATABASE_URL points at it.
"""
import asyncio
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from jqsync.database import engine, Base
import jqsync.models  # noqa: F401


async def create_tables():
    """Create all database tables"""
    print("="*60)
    print("Creating Database Tables")
    print("="*60)
    print()

    try:
        print("Connecting to database...")
        async with engine.begin() as conn:
            print("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)

        print()
        print("✅ Tables created successfully!")
        print()
        print("Tables:")
        for table_name in sorted(Base.metadata.tables):
            print(f"  - {table_name}")
        print()
        print("Next steps:")
        print("  1. Load the calendar: python run_job.py calendar")
        print("  2. Start API: uvicorn jqsync.main:app --reload")
        print()

    except Exception as e:
        print()
        print(f"❌ ERROR: Failed to create tables")
        print(f"   {str(e)}")
        print()
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_tables())
