from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date


class DailyJobRequest(BaseModel):
    target_date: date | None = None  # None: catch-up plan or previous business day


class EquityBarsChunkRequest(BaseModel):
    trade_date: date | None = Field(None, alias="date")
    pagination_key: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def pagination_key_requires_date(self):
        if self.pagination_key and self.trade_date is None:
            raise ValueError("date is required when pagination_key is provided")
        return self


class JobResult(BaseModel):
    """Outcome of one job invocation; every path ends in one of these"""
    success: bool
    job_name: str
    dataset: str | None = None
    target_date: date | None = None
    processed_dates: list[date] = Field(default_factory=list)
    fetched: int = 0
    written: int = 0
    page_count: int = 0
    continuation_token: str | None = None
    skipped: bool = False
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    run_ids: list[str] = Field(default_factory=list)
    details: dict = Field(default_factory=dict)

    @property
    def done(self) -> bool:
        return self.continuation_token is None

    model_config = ConfigDict(from_attributes=True)
