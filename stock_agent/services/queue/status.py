from stock_agent.core.errors import BatchNotFound, JobNotFound
from stock_agent.models.job import AnalysisJob, JobStatus
from stock_agent.schemas.job import BatchRead, BatchStats, JobListResponse, JobRead, QueueStats
from stock_agent.services.queue.enqueuer import aggregate_batch_status
from stock_agent.services.queue.store import JobStore


def _queue_stats(counts: dict[str, int]) -> QueueStats:
    return QueueStats(
        pending=counts.get(JobStatus.PENDING.value, 0),
        processing=counts.get(JobStatus.PROCESSING.value, 0),
        completed=counts.get(JobStatus.COMPLETED.value, 0),
        failed=counts.get(JobStatus.FAILED.value, 0),
    )


def batch_stats(jobs: list[AnalysisJob]) -> BatchStats:
    counts: dict[str, int] = {}
    for job in jobs:
        counts[job.status] = counts.get(job.status, 0) + 1
    return BatchStats(total=len(jobs), **_queue_stats(counts).model_dump())


def list_jobs(
    store: JobStore,
    status: JobStatus | None = None,
    batch_job_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JobListResponse:
    rows, counts = store.list_jobs(status=status, batch_job_id=batch_job_id, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[JobRead.model_validate(row) for row in rows],
        total=sum(counts.values()),
        stats=_queue_stats(counts),
        limit=limit,
        offset=offset,
    )


def get_job(store: JobStore, job_id: str) -> JobRead:
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)
    return JobRead.model_validate(job)


def get_batch_status(store: JobStore, batch_id: str) -> BatchRead:
    batch = store.get_batch(batch_id)
    if batch is None:
        raise BatchNotFound(batch_id)
    jobs = list(batch.jobs)
    return BatchRead(
        id=batch.id,
        tickers=batch.tickers,
        language=batch.language,
        created_at=batch.created_at,
        updated_at=batch.updated_at,
        overall_status=aggregate_batch_status(job.status for job in jobs),
        stats=batch_stats(jobs),
        jobs=[JobRead.model_validate(job) for job in jobs],
    )
