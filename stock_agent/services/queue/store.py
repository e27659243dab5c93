from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, aliased, selectinload, sessionmaker

from stock_agent.core.errors import ClaimConflict, InvalidTransition, JobNotFound, TransientStoreError
from stock_agent.models.batch import BatchJob
from stock_agent.models.common import utcnow
from stock_agent.models.job import AnalysisJob, JobStatus

RECOVERY_NOTE = "System restart: job reset"
_CONTENTION_SQLSTATES = {"40001", "40P01"}


def clamp_progress(value: float) -> int:
    return max(0, min(100, int(value)))


def format_log_entry(message: str, at: datetime | None = None) -> str:
    stamp = (at or utcnow()).astimezone(timezone.utc).isoformat(timespec="seconds")
    return f"[{stamp}] {message}"


def _is_contention(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


class JobStore:
    """Durable job table. Every state transition is a single short transaction."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # -- creation -----------------------------------------------------

    def create_batch(self, raw_tickers: str, language: str, tickers: list[str]) -> tuple[BatchJob, list[AnalysisJob]]:
        base = utcnow()
        with self._session() as db:
            batch = BatchJob(tickers=raw_tickers, language=language, created_at=base, updated_at=base)
            db.add(batch)
            db.flush()
            jobs = [
                AnalysisJob(
                    batch_job_id=batch.id,
                    ticker=ticker,
                    query=ticker,
                    language=language,
                    status=JobStatus.PENDING.value,
                    progress=0,
                    logs=[],
                    # Distinct timestamps keep FIFO claim order equal to submission order.
                    created_at=base + timedelta(microseconds=idx),
                    updated_at=base,
                )
                for idx, ticker in enumerate(tickers)
            ]
            db.add_all(jobs)
            db.commit()
            return batch, jobs

    def create_job(self, ticker: str, language: str, query: str | None = None) -> AnalysisJob:
        with self._session() as db:
            job = AnalysisJob(
                ticker=ticker,
                query=query or ticker,
                language=language,
                status=JobStatus.PENDING.value,
                progress=0,
                logs=[],
            )
            db.add(job)
            db.commit()
            return job

    def create_completed_job(self, ticker: str, query: str, language: str, result: dict[str, Any]) -> AnalysisJob:
        now = utcnow()
        with self._session() as db:
            job = AnalysisJob(
                ticker=ticker,
                query=query,
                language=language,
                status=JobStatus.COMPLETED.value,
                progress=100,
                current_step="Analysis Complete",
                logs=[],
                result=result,
                started_at=now,
                completed_at=now,
            )
            db.add(job)
            db.commit()
            return job

    # -- reads --------------------------------------------------------

    def get_job(self, job_id: str) -> AnalysisJob | None:
        with self._session() as db:
            return db.get(AnalysisJob, job_id)

    def get_batch(self, batch_id: str) -> BatchJob | None:
        with self._session() as db:
            return db.scalar(select(BatchJob).options(selectinload(BatchJob.jobs)).where(BatchJob.id == batch_id))

    def list_jobs(
        self,
        status: JobStatus | None = None,
        batch_job_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AnalysisJob], dict[str, int]]:
        filters = []
        if status is not None:
            filters.append(AnalysisJob.status == status.value)
        if batch_job_id:
            filters.append(AnalysisJob.batch_job_id == batch_job_id)
        with self._session() as db:
            rows = db.scalars(
                select(AnalysisJob)
                .where(*filters)
                .order_by(AnalysisJob.created_at.desc(), AnalysisJob.id)
                .limit(limit)
                .offset(offset)
            ).all()
            counts = db.execute(
                select(AnalysisJob.status, func.count(AnalysisJob.id)).where(*filters).group_by(AnalysisJob.status)
            ).all()
        return list(rows), {row_status: int(count) for row_status, count in counts}

    def count_by_status(self, status: JobStatus) -> int:
        with self._session() as db:
            return db.scalar(select(func.count(AnalysisJob.id)).where(AnalysisJob.status == status.value)) or 0

    def list_completed(self) -> list[AnalysisJob]:
        with self._session() as db:
            rows = db.scalars(
                select(AnalysisJob)
                .where(AnalysisJob.status == JobStatus.COMPLETED.value, AnalysisJob.result.is_not(None))
                .order_by(AnalysisJob.completed_at.desc())
            ).all()
        return list(rows)

    # -- scheduler transitions ---------------------------------------

    def claim_next_job(self, limit: int) -> AnalysisJob | None:
        """Move the oldest PENDING job to PROCESSING if capacity allows.

        Returns ``None`` when the queue is full or empty and raises
        ``ClaimConflict`` when a concurrent claimer won the race.
        """
        try:
            with self._session() as db:
                if db.get_bind().dialect.name != "sqlite":
                    db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

                processing = db.scalar(
                    select(func.count(AnalysisJob.id)).where(AnalysisJob.status == JobStatus.PROCESSING.value)
                ) or 0
                if processing >= limit:
                    db.rollback()
                    return None

                candidate_id = db.scalar(
                    select(AnalysisJob.id)
                    .where(AnalysisJob.status == JobStatus.PENDING.value)
                    .order_by(AnalysisJob.created_at.asc(), AnalysisJob.id)
                    .limit(1)
                )
                if candidate_id is None:
                    db.rollback()
                    return None

                # The capacity check is repeated inside the UPDATE so the claim
                # stays atomic even where the SELECTs above ran unlocked.
                active = aliased(AnalysisJob)
                active_count = (
                    select(func.count(active.id)).where(active.status == JobStatus.PROCESSING.value).scalar_subquery()
                )
                now = utcnow()
                result = db.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.id == candidate_id,
                        AnalysisJob.status == JobStatus.PENDING.value,
                        active_count < limit,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=now,
                        completed_at=None,
                        progress=0,
                        error=None,
                        result=None,
                        current_step="Claimed",
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise ClaimConflict(candidate_id)
                db.commit()
                return db.get(AnalysisJob, candidate_id)
        except DBAPIError as exc:
            if _is_contention(exc):
                raise ClaimConflict(str(exc.orig)) from exc
            raise TransientStoreError(str(exc.orig)) from exc

    def update_progress(
        self,
        job_id: str,
        progress: float,
        current_step: str | None = None,
        log_messages: Iterable[str] = (),
    ) -> bool:
        """Record progress for a PROCESSING job. Returns False if the job is no longer running."""
        with self._session() as db:
            job = db.scalar(select(AnalysisJob).where(AnalysisJob.id == job_id).with_for_update())
            if job is None:
                raise JobNotFound(job_id)
            if job.status != JobStatus.PROCESSING.value:
                db.rollback()
                return False
            job.progress = max(job.progress or 0, clamp_progress(progress))
            if current_step is not None:
                job.current_step = current_step[:255]
            entries = [format_log_entry(message) for message in log_messages]
            if entries:
                job.logs = [*(job.logs or []), *entries]
            db.commit()
            return True

    def complete_job(self, job_id: str, result: dict[str, Any]) -> AnalysisJob:
        return self._finish(
            job_id,
            JobStatus.COMPLETED,
            result=result,
            error=None,
            progress=100,
            current_step="Analysis Complete",
        )

    def fail_job(self, job_id: str, error: str) -> AnalysisJob:
        return self._finish(
            job_id,
            JobStatus.FAILED,
            result=None,
            error=error or "Unknown error",
            progress=0,
            current_step="Failed",
        )

    def _finish(
        self,
        job_id: str,
        target: JobStatus,
        *,
        result: dict[str, Any] | None,
        error: str | None,
        progress: int,
        current_step: str,
    ) -> AnalysisJob:
        with self._session() as db:
            job = db.scalar(select(AnalysisJob).where(AnalysisJob.id == job_id).with_for_update())
            if job is None:
                raise JobNotFound(job_id)
            if job.status != JobStatus.PROCESSING.value:
                db.rollback()
                raise InvalidTransition(job_id, job.status, target.value)
            now = utcnow()
            job.status = target.value
            job.result = result
            job.error = error
            job.progress = progress
            job.current_step = current_step
            job.completed_at = now
            message = current_step if error is None else f"{current_step}: {error}"
            job.logs = [*(job.logs or []), format_log_entry(message, now)]
            db.commit()
            return job

    def recover_stalled_jobs(self) -> int:
        """Reset jobs orphaned in PROCESSING by a previous process back to PENDING."""
        with self._session() as db:
            result = db.execute(
                update(AnalysisJob)
                .where(AnalysisJob.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    progress=0,
                    current_step=None,
                    error=RECOVERY_NOTE,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return int(result.rowcount or 0)

    # -- history ------------------------------------------------------

    def delete_job(self, job_id: str) -> bool:
        with self._session() as db:
            job = db.get(AnalysisJob, job_id)
            if job is None:
                return False
            db.delete(job)
            db.commit()
            return True

    def delete_completed_jobs(self) -> int:
        with self._session() as db:
            jobs = db.scalars(select(AnalysisJob).where(AnalysisJob.status == JobStatus.COMPLETED.value)).all()
            for job in jobs:
                db.delete(job)
            db.commit()
            return len(jobs)
