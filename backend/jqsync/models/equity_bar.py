from sqlalchemy import Column, String, Date, DateTime, Float, Index

from jqsync.database import Base
from jqsync.utils.dates import utc_now


class EquityBarDaily(Base):
    """Daily OHLCV per listed issue (/equities/bars/daily)"""
    __tablename__ = "equity_bar_daily"

    trade_date = Column(Date, primary_key=True)
    local_code = Column(String(10), primary_key=True)

    open = Column(Float)
    high = Column(Float)
    low = Column(Float)
    close = Column(Float)
    volume = Column(Float)
    turnover_value = Column(Float)

    # Split/merger adjusted values
    adjustment_factor = Column(Float)
    adj_open = Column(Float)
    adj_high = Column(Float)
    adj_low = Column(Float)
    adj_close = Column(Float)
    adj_volume = Column(Float)

    ingested_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('ix_equity_bar_daily_code_date', 'local_code', 'trade_date'),
    )

    def __repr__(self):
        return f"<EquityBarDaily {self.local_code} {self.trade_date} close={self.close}>"
