from sqlalchemy import Column, String, DateTime

from jqsync.database import Base
from jqsync.utils.dates import utc_now


class JobLock(Base):
    """
    Time-boxed lease for a job name.

    The row is created on first acquisition and overwritten on each
    re-acquisition. Releasing moves locked_until into the past instead of
    deleting the row.
    """
    __tablename__ = "job_locks"

    job_name = Column(String(100), primary_key=True)
    locked_until = Column(DateTime, nullable=False)
    lock_token = Column(String(36), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<JobLock {self.job_name} until={self.locked_until}>"
