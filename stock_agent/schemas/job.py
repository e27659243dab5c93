from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stock_agent.models.job import JobStatus
from stock_agent.schemas.analysis import Language


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class JobRead(CamelModel):
    id: str
    batch_job_id: str | None
    ticker: str
    query: str
    language: str
    status: JobStatus
    progress: int
    current_step: str | None
    logs: list[str]
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class JobSummary(CamelModel):
    id: str
    ticker: str


class QueueStats(CamelModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class BatchStats(QueueStats):
    total: int = 0


class BatchCreateRequest(CamelModel):
    tickers: str
    language: Language = "en"


class BatchCreateResponse(CamelModel):
    batch_job_id: str
    job_count: int
    jobs: list[JobSummary]
    message: str = "Batch job created. Background processing started."


class JobCreateRequest(CamelModel):
    ticker: str = Field(min_length=1)
    language: Language = "en"
    query: str | None = None


class BatchRead(CamelModel):
    id: str
    tickers: str
    language: str
    created_at: datetime
    updated_at: datetime
    overall_status: JobStatus
    stats: BatchStats
    jobs: list[JobRead]


class JobListResponse(CamelModel):
    jobs: list[JobRead]
    total: int
    stats: QueueStats
    limit: int
    offset: int


class ProcessTriggerResponse(CamelModel):
    message: str = "Queue processing started in background"
    status: str = "processing"
