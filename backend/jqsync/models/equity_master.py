"""
Equity Master Model - SCD Type 2 history of listed issues
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, Index, UniqueConstraint, text

from jqsync.database import Base
from jqsync.utils.dates import utc_now


class EquityMaster(Base):
    """
    Versioned reference data per issue.

    Each attribute change closes the current version (valid_to set,
    is_current cleared) and opens a successor whose valid_from equals the
    closed version's valid_to. Issues missing from a refresh are closed
    without a successor.
    """
    __tablename__ = "equity_master"

    id = Column(Integer, primary_key=True, autoincrement=True)
    local_code = Column(String(10), nullable=False)

    company_name = Column(String(200))
    company_name_en = Column(String(200))
    sector17_code = Column(String(10))
    sector17_name = Column(String(100))
    sector33_code = Column(String(10))
    sector33_name = Column(String(100))
    scale_category = Column(String(50))
    market_code = Column(String(10))
    market_name = Column(String(50))
    margin_code = Column(String(10))
    margin_code_name = Column(String(50))

    # Validity interval [valid_from, valid_to)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date)
    is_current = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('local_code', 'valid_from', name='uq_equity_master_code_valid_from'),
        Index(
            'uix_equity_master_current',
            'local_code',
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
    )

    def __repr__(self):
        return f"<EquityMaster {self.local_code} {self.valid_from}..{self.valid_to} current={self.is_current}>"
