from fastapi import APIRouter, Depends, Query, status

from stock_agent.core.config import get_settings
from stock_agent.models.job import JobStatus
from stock_agent.routers.deps import get_scheduler, get_store
from stock_agent.schemas.job import (
    BatchCreateRequest,
    BatchCreateResponse,
    BatchRead,
    JobCreateRequest,
    JobListResponse,
    JobRead,
    JobSummary,
    ProcessTriggerResponse,
)
from stock_agent.services.queue import status as queue_status
from stock_agent.services.queue.enqueuer import enqueue_batch, enqueue_single
from stock_agent.services.queue.scheduler import Scheduler
from stock_agent.services.queue.store import JobStore

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("/batch", response_model=BatchCreateResponse)
def create_batch(
    payload: BatchCreateRequest,
    store: JobStore = Depends(get_store),
    scheduler: Scheduler = Depends(get_scheduler),
) -> BatchCreateResponse:
    result = enqueue_batch(store, payload.tickers, payload.language)
    scheduler.wake()
    return BatchCreateResponse(
        batch_job_id=result.batch_id,
        job_count=len(result.jobs),
        jobs=[JobSummary(id=job_id, ticker=ticker) for job_id, ticker in result.jobs],
    )


@router.get("/batch/{batch_id}", response_model=BatchRead)
def get_batch(batch_id: str, store: JobStore = Depends(get_store)) -> BatchRead:
    return queue_status.get_batch_status(store, batch_id)


@router.post("/process", response_model=ProcessTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_processing(scheduler: Scheduler = Depends(get_scheduler)) -> ProcessTriggerResponse:
    scheduler.wake()
    return ProcessTriggerResponse()


@router.post("", response_model=JobSummary)
def create_job(
    payload: JobCreateRequest,
    store: JobStore = Depends(get_store),
    scheduler: Scheduler = Depends(get_scheduler),
) -> JobSummary:
    result = enqueue_single(store, payload.ticker, payload.language, payload.query)
    scheduler.wake()
    job_id, ticker = result.jobs[0]
    return JobSummary(id=job_id, ticker=ticker)


@router.get("", response_model=JobListResponse)
def list_jobs(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
    batch_job_id: str | None = Query(default=None, alias="batchJobId"),
    store: JobStore = Depends(get_store),
) -> JobListResponse:
    settings = get_settings()
    page_size = min(max(limit or settings.default_page_size, 1), settings.max_page_size)
    selected = JobStatus(status_filter) if status_filter in {s.value for s in JobStatus} else None
    return queue_status.list_jobs(
        store,
        status=selected,
        batch_job_id=batch_job_id,
        limit=page_size,
        offset=max(offset, 0),
    )


@router.get("/{job_id}", response_model=JobRead)
def get_job(job_id: str, store: JobStore = Depends(get_store)) -> JobRead:
    return queue_status.get_job(store, job_id)
