from sqlalchemy import Column, Date, DateTime, Float

from jqsync.database import Base
from jqsync.utils.dates import utc_now


class TopixBarDaily(Base):
    __tablename__ = "topix_bar_daily"

    trade_date = Column(Date, primary_key=True)
    open = Column(Float)
    high = Column(Float)
    low = Column(Float)
    close = Column(Float)

    ingested_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<TopixBarDaily {self.trade_date} close={self.close}>"
