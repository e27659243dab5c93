import asyncio

from sqlalchemy.exc import OperationalError

from stock_agent.core.errors import TransientStoreError
from stock_agent.models.common import utcnow
from stock_agent.models.job import JobStatus
from stock_agent.schemas.analysis import AnalysisState
from stock_agent.services.analysis.executor import AnalysisExecutor
from stock_agent.services.queue.enqueuer import enqueue_batch
from stock_agent.services.queue.scheduler import Scheduler
from stock_agent.services.queue.store import RECOVERY_NOTE


class SlowExecutor:
    def __init__(self, fail_tickers=()):
        self.fail_tickers = set(fail_tickers)
        self.active = 0
        self.peak = 0
        self.order: list[str] = []

    async def run(self, job, report):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.order.append(job.ticker)
        try:
            await report(50, "Halfway", f"Working on {job.ticker}")
            await asyncio.sleep(0.05)
            if job.ticker in self.fail_tickers:
                raise RuntimeError(f"No data for {job.ticker}")
            return AnalysisState(id=job.id, timestamp=utcnow().isoformat(), language="en", query=job.query)
        finally:
            self.active -= 1


def test_run_until_idle_completes_batch_in_submission_order(store):
    result = enqueue_batch(store, "AAPL MSFT GOOGL NVDA")
    executor = SlowExecutor()
    scheduler = Scheduler(store, executor, max_concurrent_jobs=2)

    asyncio.run(scheduler.run_until_idle())

    assert executor.order == ["AAPL", "MSFT", "GOOGL", "NVDA"]
    assert executor.peak == 2
    for job_id in result.job_ids:
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.progress == 100
        assert job.result["query"] == job.ticker
        assert any("50% - Working on" in entry for entry in job.logs)


def test_single_slot_runs_jobs_one_at_a_time(store):
    enqueue_batch(store, "AAPL, MSFT, GOOGL")
    executor = SlowExecutor()

    asyncio.run(Scheduler(store, executor, max_concurrent_jobs=1).run_until_idle())

    assert executor.peak == 1
    assert store.count_by_status(JobStatus.COMPLETED) == 3


def test_failed_job_does_not_stop_the_queue(store):
    result = enqueue_batch(store, "AAPL, BAD, MSFT")
    executor = SlowExecutor(fail_tickers={"BAD"})

    asyncio.run(Scheduler(store, executor, max_concurrent_jobs=2).run_until_idle())

    statuses = {store.get_job(job_id).ticker: store.get_job(job_id) for job_id in result.job_ids}
    assert statuses["AAPL"].status == JobStatus.COMPLETED.value
    assert statuses["MSFT"].status == JobStatus.COMPLETED.value
    assert statuses["BAD"].status == JobStatus.FAILED.value
    assert statuses["BAD"].error == "No data for BAD"
    assert statuses["BAD"].result is None


def test_recovered_jobs_are_processed_again(store):
    result = enqueue_batch(store, "AAPL")
    store.claim_next_job(limit=1)
    scheduler = Scheduler(store, SlowExecutor(), max_concurrent_jobs=1)

    async def restart():
        assert await scheduler.recover_stalled_jobs() == 1
        assert store.get_job(result.job_ids[0]).error == RECOVERY_NOTE
        await scheduler.run_until_idle()

    asyncio.run(restart())

    job = store.get_job(result.job_ids[0])
    assert job.status == JobStatus.COMPLETED.value
    assert job.error is None


def test_started_scheduler_picks_up_new_work_on_wake(store):
    scheduler = Scheduler(store, SlowExecutor(), max_concurrent_jobs=2, watchdog_interval_seconds=5.0)

    async def scenario():
        await scheduler.start()
        assert scheduler.is_running
        result = enqueue_batch(store, "AAPL, MSFT")
        scheduler.wake()
        for _ in range(100):
            if store.count_by_status(JobStatus.COMPLETED) == 2:
                break
            await asyncio.sleep(0.05)
        await scheduler.stop()
        return result

    result = asyncio.run(scenario())

    assert not scheduler.is_running
    assert all(store.get_job(job_id).status == JobStatus.COMPLETED.value for job_id in result.job_ids)


def test_scheduler_with_analysis_executor(store, research_client, market_data):
    result = enqueue_batch(store, "AAPL", language="cn")
    executor = AnalysisExecutor(research_client, market_data, questions_per_company=2)

    asyncio.run(Scheduler(store, executor).run_until_idle())

    job = store.get_job(result.job_ids[0])
    assert job.status == JobStatus.COMPLETED.value
    assert job.result["language"] == "cn"
    assert job.result["focusCompany"]["profile"]["ticker"] == "AAPL"
    assert job.result["focusCompany"]["profile"]["currentPrice"] == "123.45"
    assert [c["profile"]["ticker"] for c in job.result["candidateCompanies"]] == ["MSFT", "GOOGL"]
    assert job.result["focusCompany"]["finalConclusion"]["overall_conclusion"] == "Hold"


def test_finalize_is_retried_after_a_store_error(store):
    result = enqueue_batch(store, "AAPL, MSFT")
    real_complete = store.complete_job
    attempts = []

    def flaky_complete(job_id, payload):
        attempts.append(job_id)
        if len(attempts) == 1:
            raise OperationalError("UPDATE analysis_jobs", {}, Exception("database is locked"))
        return real_complete(job_id, payload)

    store.complete_job = flaky_complete
    scheduler = Scheduler(store, SlowExecutor(), max_concurrent_jobs=1, error_backoff_seconds=0.01)

    asyncio.run(scheduler.run_until_idle())

    assert [store.get_job(job_id).status for job_id in result.job_ids] == ["COMPLETED", "COMPLETED"]
    assert attempts[:2] == [result.job_ids[0], result.job_ids[0]]


def test_finalize_gives_up_on_an_invalid_transition(store):
    result = enqueue_batch(store, "AAPL")

    class RecoveringExecutor(SlowExecutor):
        async def run(self, job, report):
            state = await super().run(job, report)
            store.recover_stalled_jobs()
            return state

    scheduler = Scheduler(store, RecoveringExecutor(), max_concurrent_jobs=1, error_backoff_seconds=0.01)

    async def once():
        await scheduler.tick()
        await asyncio.wait(set(scheduler._running))

    asyncio.run(once())

    assert store.get_job(result.job_ids[0]).status == JobStatus.PENDING.value


def test_watchdog_alone_drives_processing(store):
    scheduler = Scheduler(store, SlowExecutor(), max_concurrent_jobs=2, watchdog_interval_seconds=0.05)

    async def scenario():
        await scheduler.start()
        await asyncio.sleep(0.1)
        result = enqueue_batch(store, "AAPL, MSFT")
        for _ in range(100):
            if store.count_by_status(JobStatus.COMPLETED) == 2:
                break
            await asyncio.sleep(0.05)
        await scheduler.stop()
        return result

    result = asyncio.run(scenario())

    assert all(store.get_job(job_id).status == JobStatus.COMPLETED.value for job_id in result.job_ids)


def test_loop_backs_off_and_resumes_after_store_outage(store):
    result = enqueue_batch(store, "AAPL")
    real_claim = store.claim_next_job
    calls = []

    def flaky_claim(limit):
        calls.append(limit)
        if len(calls) == 1:
            raise TransientStoreError("connection refused")
        return real_claim(limit)

    store.claim_next_job = flaky_claim
    scheduler = Scheduler(
        store, SlowExecutor(), watchdog_interval_seconds=0.05, error_backoff_seconds=0.01
    )

    async def scenario():
        await scheduler.start()
        for _ in range(100):
            if store.count_by_status(JobStatus.COMPLETED) == 1:
                break
            await asyncio.sleep(0.05)
        running = scheduler.is_running
        await scheduler.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert len(calls) > 1
    assert store.get_job(result.job_ids[0]).status == JobStatus.COMPLETED.value
