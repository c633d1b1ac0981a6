from jqsync.schemas.jobs import DailyJobRequest, EquityBarsChunkRequest, JobResult
from jqsync.schemas.status import (
    JobRunResponse,
    HeartbeatResponse,
    JobHealthResponse,
    JobLockResponse,
    IntegrityResponse,
)

__all__ = [
    "DailyJobRequest",
    "EquityBarsChunkRequest",
    "JobResult",
    "JobRunResponse",
    "HeartbeatResponse",
    "JobHealthResponse",
    "JobLockResponse",
    "IntegrityResponse",
]
