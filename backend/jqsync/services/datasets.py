"""
Dataset synchronizers.

Each function fetches one unit of work from J-Quants and writes it with the
batch writer (or the SCD synchronizer for the equity master). They commit as
they go and raise on failure; run bookkeeping is left to the job runner.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.config import settings
from jqsync.models.calendar import TradingCalendar
from jqsync.models.equity_bar import EquityBarDaily
from jqsync.models.investor_type import InvestorTypeTrading
from jqsync.models.topix import TopixBarDaily
from jqsync.services.batch_writer import batch_upsert
from jqsync.services.scd_sync import ScdSynchronizer
from jqsync.utils.dates import add_days
from jqsync.utils.jquants_client import (
    JQuantsClient,
    parse_calendar_day,
    parse_equity_bar,
    parse_equity_master,
    parse_investor_types,
    parse_topix_bar,
)

logger = logging.getLogger(__name__)

EQUITY_BAR_KEY = ["trade_date", "local_code"]
TOPIX_KEY = ["trade_date"]
CALENDAR_KEY = ["calendar_date"]
INVESTOR_TYPE_KEY = ["published_date", "section", "start_date", "end_date", "investor_type", "metric"]


@dataclass
class SyncResult:
    dataset: str
    fetched: int = 0
    written: int = 0
    page_count: int = 0
    next_token: Optional[str] = None
    effective_date: Optional[date] = None
    errors: List[Exception] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


async def sync_trading_calendar(
    db: AsyncSession,
    client: JQuantsClient,
    today: date,
    window_days: Optional[int] = None,
) -> SyncResult:
    """
    Sync the exchange calendar for [today - window, today + window].

    Past dates already stored are left as they are; today and future dates
    are overwritten because the exchange may still revise them.
    """
    window_days = window_days or settings.CALENDAR_WINDOW_DAYS
    items = await client.get_trading_calendar(add_days(today, -window_days), add_days(today, window_days))
    records = [parse_calendar_day(item) for item in items]

    upserted = await batch_upsert(
        db,
        TradingCalendar,
        records,
        CALENDAR_KEY,
        update_where=TradingCalendar.calendar_date >= today,
    )
    return SyncResult(
        dataset="calendar",
        fetched=len(items),
        written=upserted.written,
        page_count=1,
        details={"processing_days": sum(1 for r in records if r["is_processing_day"])},
    )


async def sync_equity_bars_page(
    db: AsyncSession,
    client: JQuantsClient,
    trade_date: date,
    pagination_key: Optional[str] = None,
) -> SyncResult:
    """Fetch and store a single page of daily bars; next_token is set while pages remain"""
    page = await client.get_equity_bars_daily_page(trade_date, pagination_key)
    records = [parse_equity_bar(item) for item in page.items]
    upserted = await batch_upsert(db, EquityBarDaily, records, EQUITY_BAR_KEY)

    return SyncResult(
        dataset="equity_bars",
        fetched=len(page.items),
        written=upserted.written,
        page_count=1,
        next_token=page.next_token,
        effective_date=trade_date,
    )


async def sync_equity_bars(db: AsyncSession, client: JQuantsClient, trade_date: date) -> SyncResult:
    """Fetch and store every page of daily bars for trade_date"""
    result = SyncResult(dataset="equity_bars", effective_date=trade_date)
    pagination_key = None

    while True:
        page = await sync_equity_bars_page(db, client, trade_date, pagination_key)
        result.fetched += page.fetched
        result.written += page.written
        result.page_count += 1

        if not page.next_token:
            break
        if result.page_count >= settings.JQUANTS_MAX_PAGES:
            logger.warning(f"equity_bars {trade_date}: stopped after {result.page_count} pages")
            result.next_token = page.next_token
            break
        pagination_key = page.next_token

    if result.fetched == 0:
        logger.warning(f"equity_bars {trade_date}: source returned no rows")
    return result


async def sync_topix(db: AsyncSession, client: JQuantsClient, trade_date: date) -> SyncResult:
    items = await client.get_topix_bars_daily(trade_date, trade_date)
    records = [parse_topix_bar(item) for item in items]
    upserted = await batch_upsert(db, TopixBarDaily, records, TOPIX_KEY)

    if not items:
        logger.warning(f"topix {trade_date}: source returned no rows")
    return SyncResult(
        dataset="topix",
        fetched=len(items),
        written=upserted.written,
        page_count=1,
        effective_date=trade_date,
    )


async def sync_equity_master(
    db: AsyncSession,
    client: JQuantsClient,
    as_of: date,
    synchronizer: Optional[ScdSynchronizer] = None,
) -> SyncResult:
    """
    Refresh the equity master history from the listing on as_of.

    The effective date comes from the returned items, which may differ from
    as_of when as_of is not a business day.
    """
    items = await client.get_equity_master(as_of)
    records = [parse_equity_master(item) for item in items]

    scd = await (synchronizer or ScdSynchronizer()).sync(db, records, effective_date=as_of)
    return SyncResult(
        dataset="equity_master",
        fetched=scd.fetched,
        written=scd.inserted + scd.delisted,
        page_count=1,
        effective_date=scd.effective_date,
        details={
            "inserted": scd.inserted,
            "updated": scd.updated,
            "delisted": scd.delisted,
            "relisted": scd.relisted,
            "unchanged": scd.unchanged,
            "skipped": scd.skipped,
            "stale_snapshot": scd.stale_snapshot,
        },
    )


async def sync_investor_types(
    db: AsyncSession,
    client: JQuantsClient,
    today: date,
    window_days: Optional[int] = None,
) -> SyncResult:
    """
    Re-sync the sliding window of weekly investor type statistics.

    Corrections are re-published with a new published_date, so the whole
    window is upserted on every run. Chunk failures are collected rather
    than aborting the remaining chunks.
    """
    window_days = window_days or settings.INVESTOR_TYPES_WINDOW_DAYS
    items = await client.get_investor_types(add_days(today, -window_days), today)

    records = []
    for item in items:
        records.extend(parse_investor_types(item))

    upserted = await batch_upsert(
        db,
        InvestorTypeTrading,
        records,
        INVESTOR_TYPE_KEY,
        continue_on_error=True,
    )
    return SyncResult(
        dataset="investor_types",
        fetched=len(items),
        written=upserted.written,
        page_count=1,
        errors=list(upserted.errors),
        details={"rows": len(records), "window_days": window_days},
    )
