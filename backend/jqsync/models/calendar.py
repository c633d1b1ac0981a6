from sqlalchemy import Column, Date, String, Boolean, DateTime, Index

from jqsync.database import Base
from jqsync.utils.dates import utc_now

# HolDiv codes returned by /markets/calendar
HOL_DIV_NON_BUSINESS = "0"
HOL_DIV_BUSINESS = "1"
HOL_DIV_HALF_DAY = "2"
HOL_DIV_HOLIDAY_TRADING = "3"

PROCESSING_HOL_DIVS = (HOL_DIV_BUSINESS, HOL_DIV_HALF_DAY)


class TradingCalendar(Base):
    """One row per calendar date of the Tokyo exchange"""
    __tablename__ = "trading_calendar"

    calendar_date = Column(Date, primary_key=True)
    hol_div = Column(String(1), nullable=False)
    is_processing_day = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('ix_trading_calendar_processing', 'is_processing_day', 'calendar_date'),
    )

    def __repr__(self):
        return f"<TradingCalendar {self.calendar_date} hol_div={self.hol_div}>"
