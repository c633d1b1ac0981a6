from jqsync.utils.dates import jst_today, utc_now, add_days, parse_date

__all__ = [
    "jst_today",
    "utc_now",
    "add_days",
    "parse_date",
]
