"""Bounded-concurrency dispatcher for queued analysis jobs.

The scheduler owns no locks. Capacity and exclusivity come from
``JobStore.claim_next_job``, which is atomic in the database, so several
processes can run this loop against one store without double-processing.

The loop waits on a wake event. Enqueueing, the manual trigger and every
finished job set the event; a timeout on the wait acts as the watchdog so
processing resumes even if every wake-up were lost.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from stock_agent.core.errors import ClaimConflict, InvalidTransition, JobNotFound, QueueError, TransientStoreError
from stock_agent.models.job import AnalysisJob
from stock_agent.schemas.analysis import AnalysisState
from stock_agent.services.queue.store import JobStore, clamp_progress

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    async def __call__(self, progress: float, step: str, log: str | None = None) -> None: ...


class JobExecutor(Protocol):
    async def run(self, job: AnalysisJob, report: ProgressReporter) -> AnalysisState: ...


class JobProgressReporter:
    """Persists each progress step so polling clients see it immediately."""

    def __init__(self, store: JobStore, job_id: str) -> None:
        self.store = store
        self.job_id = job_id

    async def __call__(self, progress: float, step: str, log: str | None = None) -> None:
        percent = clamp_progress(progress)
        message = log or step
        logger.info("[Job %s] %s%% - %s", self.job_id, percent, message)
        try:
            await asyncio.to_thread(
                self.store.update_progress, self.job_id, percent, step, [f"{percent}% - {message}"]
            )
        except (QueueError, SQLAlchemyError):
            logger.warning("progress_update_failed", extra={"job_id": self.job_id}, exc_info=True)


class Scheduler:
    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        *,
        max_concurrent_jobs: int = 2,
        requeue_delay_seconds: float = 0.1,
        watchdog_interval_seconds: float = 10.0,
        error_backoff_seconds: float = 5.0,
        max_claim_retries: int = 5,
    ) -> None:
        self.store = store
        self.executor = executor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.requeue_delay_seconds = requeue_delay_seconds
        self.watchdog_interval_seconds = watchdog_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.max_claim_retries = max_claim_retries

        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_executions(self) -> int:
        return len(self._running)

    # -- lifecycle ----------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            logger.warning("scheduler_already_running")
            return
        self._loop = asyncio.get_running_loop()
        self._wake_event = asyncio.Event()
        self._stopping = False

        recovered = await self.recover_stalled_jobs()
        if recovered:
            logger.info("Reset %s stalled jobs to PENDING", recovered)

        self._loop_task = asyncio.create_task(self._run_forever(), name="job-scheduler")
        self.wake()
        logger.info(
            "scheduler_started",
            extra={"max_concurrent_jobs": self.max_concurrent_jobs, "watchdog_seconds": self.watchdog_interval_seconds},
        )

    async def stop(self) -> None:
        self._stopping = True
        tasks = [task for task in (self._loop_task, *self._running) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._running.clear()
        logger.info("scheduler_stopped")

    async def recover_stalled_jobs(self) -> int:
        return await asyncio.to_thread(self.store.recover_stalled_jobs)

    def wake(self) -> None:
        """Request a tick. Safe to call from any thread; never blocks."""
        if self._loop is None or self._wake_event is None or self._stopping:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._wake_event.set()
        else:
            self._loop.call_soon_threadsafe(self._wake_event.set)

    # -- dispatch -----------------------------------------------------

    async def _run_forever(self) -> None:
        assert self._wake_event is not None
        while True:
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.watchdog_interval_seconds)
            except asyncio.TimeoutError:
                logger.debug("watchdog_tick")
            self._wake_event.clear()
            try:
                await self.drain()
            except asyncio.CancelledError:
                raise
            except (TransientStoreError, SQLAlchemyError):
                logger.exception("scheduler_store_unavailable")
                await asyncio.sleep(self.error_backoff_seconds)
            except Exception:
                logger.exception("scheduler_tick_failed")
                await asyncio.sleep(self.error_backoff_seconds)

    async def tick(self) -> AnalysisJob | None:
        """Claim at most one PENDING job and start executing it in the background."""
        for attempt in range(self.max_claim_retries):
            try:
                job = await asyncio.to_thread(self.store.claim_next_job, self.max_concurrent_jobs)
            except ClaimConflict as exc:
                logger.debug("claim_conflict", extra={"attempt": attempt + 1, "detail": str(exc)})
                continue
            if job is not None:
                self._dispatch(job)
            return job
        return None

    async def drain(self) -> int:
        """Tick until the queue is empty or capacity is exhausted."""
        claimed = 0
        while await self.tick() is not None:
            claimed += 1
        return claimed

    async def run_until_idle(self) -> None:
        """Process jobs until nothing is pending or running in this process.

        Synchronous draining for scripts and tests; the served app uses
        ``start()`` and the wake/watchdog loop instead.
        """
        while True:
            claimed = await self.drain()
            if self._running:
                await asyncio.wait(set(self._running))
                continue
            if claimed == 0:
                return

    def _dispatch(self, job: AnalysisJob) -> None:
        logger.info("Processing job %s (%s)", job.id, job.ticker)
        task = asyncio.create_task(self._execute(job), name=f"analysis-job-{job.id}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _execute(self, job: AnalysisJob) -> None:
        reporter = JobProgressReporter(self.store, job.id)
        try:
            try:
                state = await self.executor.run(job, reporter)
            except asyncio.CancelledError:
                # Left in PROCESSING; the next startup recovers it.
                raise
            except Exception as exc:  # noqa: BLE001
                message = str(exc) or exc.__class__.__name__
                logger.warning("Job %s failed: %s", job.id, message, extra={"job_id": job.id})
                await self._finalize(job.id, self.store.fail_job, message)
            else:
                payload = state.model_dump(mode="json", by_alias=True)
                await self._finalize(job.id, self.store.complete_job, payload)
                logger.info("Job %s completed", job.id)
        finally:
            self._schedule_requeue()

    async def _finalize(self, job_id: str, finish: Callable[[str, Any], AnalysisJob], outcome: Any) -> None:
        """Write the terminal state, retrying until the store accepts it.

        A job left in PROCESSING would hold a concurrency slot until restart.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.to_thread(finish, job_id, outcome)
                return
            except (InvalidTransition, JobNotFound) as exc:
                logger.warning("job_finalize_skipped", extra={"job_id": job_id, "detail": str(exc)})
                return
            except (QueueError, SQLAlchemyError):
                logger.exception("job_finalize_failed", extra={"job_id": job_id, "attempt": attempt})
                await asyncio.sleep(self.error_backoff_seconds)

    def _schedule_requeue(self) -> None:
        if self._stopping or self._loop is None or self._wake_event is None:
            return
        self._loop.call_later(self.requeue_delay_seconds, self._wake_event.set)
