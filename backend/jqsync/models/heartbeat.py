from sqlalchemy import Column, String, Date, DateTime, Text

from jqsync.database import Base, JSONType
from jqsync.utils.dates import utc_now


class JobHeartbeat(Base):
    """Last observed state per job, read by staleness monitoring"""
    __tablename__ = "job_heartbeats"

    job_name = Column(String(100), primary_key=True)
    last_seen_at = Column(DateTime, nullable=False, default=utc_now)
    last_status = Column(String(20), nullable=False)  # running, success, failed
    last_run_id = Column(String(36))
    last_target_date = Column(Date)
    last_error = Column(Text)
    meta = Column(JSONType)

    def __repr__(self):
        return f"<JobHeartbeat {self.job_name} [{self.last_status}] {self.last_seen_at}>"
