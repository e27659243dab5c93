import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from stock_agent.core.errors import ValidationError
from stock_agent.models.job import JobStatus
from stock_agent.services.queue.store import JobStore

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = {"en", "cn"}
# Column widths of analysis_jobs.ticker / analysis_jobs.query.
MAX_TICKER_LENGTH = 64
MAX_QUERY_LENGTH = 255
_SEPARATORS = re.compile(r"[,\s]+")


@dataclass(slots=True)
class EnqueueResult:
    batch_id: str | None
    jobs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def job_ids(self) -> list[str]:
        return [job_id for job_id, _ in self.jobs]


def parse_tickers(raw: str) -> list[str]:
    return [token.strip() for token in _SEPARATORS.split(raw or "") if token.strip()]


def _check_language(language: str) -> str:
    normalized = (language or "").strip().lower()
    if normalized not in SUPPORTED_LANGUAGES:
        raise ValidationError(f"Unsupported language: {language}")
    return normalized


def _check_length(value: str, limit: int, label: str) -> str:
    if len(value) > limit:
        raise ValidationError(f"{label} must be at most {limit} characters: {value[:20]}...")
    return value


def enqueue_batch(store: JobStore, raw_tickers: str, language: str = "en") -> EnqueueResult:
    tickers = parse_tickers(raw_tickers)
    if not tickers:
        raise ValidationError("At least one ticker/query is required")
    for ticker in tickers:
        _check_length(ticker, MAX_TICKER_LENGTH, "Ticker")
    language = _check_language(language)

    batch, jobs = store.create_batch(raw_tickers, language, tickers)
    logger.info("batch_enqueued", extra={"batch_id": batch.id, "job_count": len(jobs)})
    return EnqueueResult(batch_id=batch.id, jobs=[(job.id, job.ticker) for job in jobs])


def enqueue_single(store: JobStore, ticker: str, language: str = "en", query: str | None = None) -> EnqueueResult:
    ticker = (ticker or "").strip()
    if not ticker:
        raise ValidationError("A ticker/query is required")
    _check_length(ticker, MAX_TICKER_LENGTH, "Ticker")
    query = (query or "").strip() or None
    if query is not None:
        _check_length(query, MAX_QUERY_LENGTH, "Query")
    language = _check_language(language)

    job = store.create_job(ticker, language, query=query)
    logger.info("job_enqueued", extra={"job_id": job.id, "ticker": job.ticker})
    return EnqueueResult(batch_id=None, jobs=[(job.id, job.ticker)])


def aggregate_batch_status(statuses: Iterable[JobStatus | str]) -> JobStatus:
    values = [JobStatus(s) for s in statuses]
    if values and all(s is JobStatus.COMPLETED for s in values):
        return JobStatus.COMPLETED
    if any(s is JobStatus.FAILED for s in values):
        return JobStatus.FAILED
    if any(s in (JobStatus.PROCESSING, JobStatus.COMPLETED) for s in values):
        return JobStatus.PROCESSING
    return JobStatus.PENDING
