from pydantic import BaseModel, ConfigDict
from datetime import date, datetime


class JobRunResponse(BaseModel):
    run_id: str
    job_name: str
    target_date: date | None
    status: str
    started_at: datetime
    finished_at: datetime | None
    error_summary: str | None
    meta: dict | None

    model_config = ConfigDict(from_attributes=True)


class HeartbeatResponse(BaseModel):
    job_name: str
    last_seen_at: datetime
    last_status: str
    last_run_id: str | None
    last_target_date: date | None
    last_error: str | None

    model_config = ConfigDict(from_attributes=True)


class JobHealthResponse(BaseModel):
    job_name: str
    healthy: bool
    reason: str | None
    last_seen_at: datetime | None
    last_status: str | None

    model_config = ConfigDict(from_attributes=True)


class JobLockResponse(BaseModel):
    job_name: str
    locked_until: datetime
    active: bool


class IntegrityResponse(BaseModel):
    calendar_ok: bool
    calendar_min: date | None
    calendar_max: date | None
    latest_dates: dict[str, date | None]
    unhealthy_jobs: list[str]
    warnings: list[str]

    model_config = ConfigDict(from_attributes=True)
