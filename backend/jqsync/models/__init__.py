from jqsync.models.calendar import TradingCalendar
from jqsync.models.job_run import JobRun, JobRunItem
from jqsync.models.job_lock import JobLock
from jqsync.models.heartbeat import JobHeartbeat
from jqsync.models.equity_master import EquityMaster
from jqsync.models.equity_bar import EquityBarDaily
from jqsync.models.topix import TopixBarDaily
from jqsync.models.investor_type import InvestorTypeTrading

__all__ = [
    "TradingCalendar",
    "JobRun",
    "JobRunItem",
    "JobLock",
    "JobHeartbeat",
    "EquityMaster",
    "EquityBarDaily",
    "TopixBarDaily",
    "InvestorTypeTrading",
]
