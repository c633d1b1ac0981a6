"""
J-Quants API V2 Client

Authenticated with the x-api-key header. Every request passes through a
shared token-bucket rate limiter and the retry helper. Paginated endpoints
return a `pagination_key` field while more pages remain.
"""

import httpx
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

from jqsync.config import settings
from jqsync.exceptions import NonRetryableSourceError, RetryableSourceError
from jqsync.utils.dates import parse_date
from jqsync.utils.market_calendar import is_processing_hol_div
from jqsync.utils.rate_limiter import RateLimiter
from jqsync.utils.retry import is_retryable_status, with_retry

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of a (possibly) paginated response"""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_token: Optional[str] = None


class JQuantsClient:
    """J-Quants API client with rate limiting, retries and pagination."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
    ):
        """Initialize client; http_client may be injected (e.g. with a mock transport)"""
        self.api_key = api_key or settings.JQUANTS_API_KEY
        self.base_url = (base_url or settings.JQUANTS_BASE_URL).rstrip("/")
        self.headers = {"x-api-key": self.api_key}
        self.rate_limiter = rate_limiter or RateLimiter(
            requests_per_minute=settings.JQUANTS_REQUESTS_PER_MINUTE,
            min_interval=settings.JQUANTS_MIN_INTERVAL_SECONDS,
        )
        self.max_retries = max_retries
        self.client = http_client or httpx.AsyncClient(timeout=settings.JQUANTS_TIMEOUT_SECONDS)

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    async def _request_once(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        await self.rate_limiter.acquire()

        try:
            response = await self.client.get(url, headers=self.headers, params=params)
            response.raise_for_status()
            data = response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"J-Quants API error: {status_code} - {e.response.text[:500]}")
            message = f"J-Quants API {endpoint} returned {status_code}"
            if is_retryable_status(status_code):
                raise RetryableSourceError(message, status_code=status_code) from e
            raise NonRetryableSourceError(message, status_code=status_code) from e
        except httpx.TransportError as e:
            # Timeouts and connection failures
            logger.error(f"J-Quants API request failed: {str(e)}")
            raise RetryableSourceError(f"J-Quants API {endpoint} request failed: {e}") from e
        except ValueError as e:
            logger.error(f"J-Quants API returned invalid JSON for {endpoint}: {str(e)}")
            raise NonRetryableSourceError(f"J-Quants API {endpoint} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise NonRetryableSourceError(f"J-Quants API {endpoint} returned unexpected payload")
        return data

    async def _get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        pagination_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Make GET request to J-Quants API with retries"""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if pagination_key:
            query["pagination_key"] = pagination_key

        return await with_retry(
            lambda: self._request_once(endpoint, query),
            max_retries=self.max_retries,
            description=f"GET {endpoint}",
        )

    # ============================================================================
    # PAGINATION
    # ============================================================================

    async def fetch_page(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        pagination_key: Optional[str] = None,
    ) -> Page:
        """
        Fetch a single page.

        Args:
            endpoint: API path (e.g. "/equities/bars/daily")
            params: Query parameters
            pagination_key: Continuation token from the previous page

        Returns:
            Page with items and the next continuation token (None on last page)
        """
        data = await self._get(endpoint, params=params, pagination_key=pagination_key)
        return Page(items=data.get("data") or [], next_token=data.get("pagination_key") or None)

    async def iter_pages(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Page]:
        """Yield pages until the API stops returning a pagination_key"""
        max_pages = max_pages or settings.JQUANTS_MAX_PAGES
        pagination_key = None

        for page_number in range(1, max_pages + 1):
            page = await self.fetch_page(endpoint, params, pagination_key)
            yield page

            if not page.next_token:
                return
            if page.next_token == pagination_key:
                raise NonRetryableSourceError(f"J-Quants API {endpoint} repeated pagination_key")
            pagination_key = page.next_token

        logger.warning(f"Stopped paginating {endpoint} after {max_pages} pages")

    async def fetch_all(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        async for page in self.iter_pages(endpoint, params, max_pages):
            items.extend(page.items)
        return items

    # ============================================================================
    # MARKET CALENDAR
    # ============================================================================

    async def get_trading_calendar(self, from_date: date, to_date: date) -> List[Dict[str, Any]]:
        """
        Get exchange calendar entries.

        Returns:
            List of {Date, HolDiv} dicts
        """
        params = {"from": from_date.isoformat(), "to": to_date.isoformat()}
        return await self.fetch_all("/markets/calendar", params)

    # ============================================================================
    # EQUITIES
    # ============================================================================

    async def get_equity_master(self, as_of: Optional[date] = None) -> List[Dict[str, Any]]:
        """
        Get the listed issue master.

        Note: when as_of is not a business day the API answers with the next
        available date; the Date field of the items is authoritative.
        """
        params = {"date": as_of.isoformat() if as_of else None}
        return await self.fetch_all("/equities/master", params)

    async def get_equity_bars_daily(self, trade_date: date) -> List[Dict[str, Any]]:
        """Get all daily bars for one trading date (all pages)"""
        return await self.fetch_all("/equities/bars/daily", {"date": trade_date.isoformat()})

    async def get_equity_bars_daily_page(
        self,
        trade_date: date,
        pagination_key: Optional[str] = None,
    ) -> Page:
        """Get one page of daily bars for a trading date"""
        return await self.fetch_page(
            "/equities/bars/daily", {"date": trade_date.isoformat()}, pagination_key
        )

    async def get_investor_types(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        section: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "from": from_date.isoformat() if from_date else None,
            "to": to_date.isoformat() if to_date else None,
            "section": section,
        }
        return await self.fetch_all("/equities/investor-types", params)

    # ============================================================================
    # INDICES
    # ============================================================================

    async def get_topix_bars_daily(self, from_date: date, to_date: date) -> List[Dict[str, Any]]:
        params = {"from": from_date.isoformat(), "to": to_date.isoformat()}
        return await self.fetch_all("/indices/bars/daily/topix", params)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def parse_calendar_day(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a /markets/calendar item into a trading_calendar row"""
    hol_div = str(item.get("HolDiv"))
    return {
        "calendar_date": parse_date(item["Date"]),
        "hol_div": hol_div,
        "is_processing_day": is_processing_hol_div(hol_div),
    }


def parse_equity_bar(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a /equities/bars/daily item into an equity_bar_daily row.

    Args:
        item: Raw bar (V2 abbreviated field names)

    Returns:
        Normalized bar dict
    """
    return {
        "trade_date": parse_date(item["Date"]),
        "local_code": item["Code"],
        "open": item.get("O"),
        "high": item.get("H"),
        "low": item.get("L"),
        "close": item.get("C"),
        "volume": item.get("Vo"),
        "turnover_value": item.get("Va"),
        "adjustment_factor": item.get("AdjFactor"),
        "adj_open": item.get("AdjO"),
        "adj_high": item.get("AdjH"),
        "adj_low": item.get("AdjL"),
        "adj_close": item.get("AdjC"),
        "adj_volume": item.get("AdjVo"),
    }


def parse_topix_bar(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "trade_date": parse_date(item["Date"]),
        "open": item.get("O"),
        "high": item.get("H"),
        "low": item.get("L"),
        "close": item.get("C"),
    }


def parse_equity_master(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a /equities/master item into SCD attributes.

    valid_from is the item's own Date, never the requested date.
    """
    return {
        "local_code": item["Code"],
        "company_name": item.get("CoName"),
        "company_name_en": item.get("CoNameEn"),
        "sector17_code": item.get("S17"),
        "sector17_name": item.get("S17Nm"),
        "sector33_code": item.get("S33"),
        "sector33_name": item.get("S33Nm"),
        "scale_category": item.get("ScaleCat"),
        "market_code": item.get("Mkt"),
        "market_name": item.get("MktNm"),
        "margin_code": item.get("MarginCode"),
        "margin_code_name": item.get("MarginCodeNm"),
        "valid_from": parse_date(item["Date"]),
    }


# API field prefix -> stored investor_type
INVESTOR_TYPE_NAMES = {
    "Prop": "proprietary",
    "Brk": "brokerage",
    "InvTr": "investment_trust",
    "BusCo": "business_corp",
    "OthCo": "other_corp",
    "InsCo": "insurance",
    "Bank": "bank",
    "TrstBnk": "trust_bank",
    "OthFin": "other_financial",
    "Ind": "individual",
    "Frgn": "foreign",
    "SecCo": "securities_co",
    "Tot": "total",
}

# API field suffix -> stored metric
METRIC_NAMES = {
    "Sell": "sales",
    "Buy": "purchases",
    "Tot": "total",
    "Bal": "balance",
}


def parse_investor_types(item: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Expand one /equities/investor-types item into long-form rows.

    One row per (investor type, metric) present in the item. The full raw
    item is only kept on the first row; the others carry an empty object.
    """
    base = {
        "published_date": parse_date(item["PubDate"]),
        "start_date": parse_date(item["StDate"]),
        "end_date": parse_date(item["EnDate"]),
        "section": item["Section"],
    }

    rows = []
    for prefix, investor_type in INVESTOR_TYPE_NAMES.items():
        for suffix, metric in METRIC_NAMES.items():
            value = item.get(f"{prefix}{suffix}")
            if value is None:
                continue
            rows.append({
                **base,
                "investor_type": investor_type,
                "metric": metric,
                "value_kjpy": value,
                "raw_json": item if not rows else {},
            })

    return rows
