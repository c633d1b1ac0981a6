"""
Date helpers.

Processing days are defined by the Tokyo exchange calendar, so "today" is
always evaluated in JST. Stored timestamps are naive UTC.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

import pytz

JST = pytz.timezone("Asia/Tokyo")


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (matches DateTime columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def jst_now() -> datetime:
    return datetime.now(JST)


def jst_today() -> date:
    """Today's date in Japan Standard Time"""
    return jst_now().date()


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """
    Parse an API or user supplied date.

    Accepts YYYY-MM-DD, YYYYMMDD, date and datetime values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if len(text) == 8 and text.isdigit():
        return datetime.strptime(text, "%Y%m%d").date()
    return datetime.strptime(text[:10], "%Y-%m-%d").date()


def format_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def days_between(start: date, end: date) -> int:
    return (end - start).days
