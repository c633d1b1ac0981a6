"""
Job Run Models - Execution log for synchronization jobs
"""
from sqlalchemy import Column, String, Integer, Date, DateTime, Text, Index, ForeignKey, text

from jqsync.database import Base, JSONType
from jqsync.utils.dates import utc_now

JOB_STATUS_RUNNING = "running"
JOB_STATUS_SUCCESS = "success"
JOB_STATUS_FAILED = "failed"


class JobRun(Base):
    """
    One row per job invocation and target date.

    Created as 'running' and moved once to 'success' or 'failed'. A
    successful run for (job_name, target_date) is what gap detection treats
    as "done", so at most one may exist per pair.
    """
    __tablename__ = "job_runs"

    run_id = Column(String(36), primary_key=True)
    job_name = Column(String(100), nullable=False, index=True)
    target_date = Column(Date)
    status = Column(String(20), nullable=False, default=JOB_STATUS_RUNNING)  # running, success, failed

    started_at = Column(DateTime, nullable=False, default=utc_now)
    finished_at = Column(DateTime)

    error_summary = Column(Text)
    meta = Column(JSONType)

    __table_args__ = (
        Index('ix_job_runs_job_target', 'job_name', 'target_date'),
        Index(
            'uix_job_runs_success_target',
            'job_name', 'target_date',
            unique=True,
            postgresql_where=text("status = 'success'"),
            sqlite_where=text("status = 'success'"),
        ),
    )

    def __repr__(self):
        return f"<JobRun {self.job_name} {self.target_date} [{self.status}]>"


class JobRunItem(Base):
    """Per-dataset detail of a job run"""
    __tablename__ = "job_run_items"

    run_id = Column(String(36), ForeignKey("job_runs.run_id", ondelete="CASCADE"), primary_key=True)
    dataset = Column(String(50), primary_key=True)
    status = Column(String(20), nullable=False)
    row_count = Column(Integer)
    page_count = Column(Integer)
    error_message = Column(Text)

    started_at = Column(DateTime, nullable=False, default=utc_now)
    finished_at = Column(DateTime)

    def __repr__(self):
        return f"<JobRunItem {self.run_id} {self.dataset} [{self.status}]>"
