from sqlalchemy import Column, String, Date, DateTime, Float

from jqsync.database import Base, JSONType
from jqsync.utils.dates import utc_now


class InvestorTypeTrading(Base):
    """
    Weekly trading value by investor category, stored long-form
    (one row per investor type and metric).

    published_date is part of the key so corrected re-publications are kept
    next to the original figures.
    """
    __tablename__ = "investor_type_trading"

    published_date = Column(Date, primary_key=True)
    section = Column(String(30), primary_key=True)  # TSEPrime, TSEStandard, TSEGrowth, ...
    start_date = Column(Date, primary_key=True)
    end_date = Column(Date, primary_key=True)
    investor_type = Column(String(30), primary_key=True)  # individual, foreign, ...
    metric = Column(String(20), primary_key=True)  # sales, purchases, total, balance

    value_kjpy = Column(Float)  # thousands of JPY
    raw_json = Column(JSONType)

    ingested_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<InvestorTypeTrading {self.section} {self.start_date}-{self.end_date} {self.investor_type}/{self.metric}>"
