from stock_agent.services.queue.enqueuer import aggregate_batch_status, enqueue_batch, enqueue_single, parse_tickers
from stock_agent.services.queue.scheduler import Scheduler
from stock_agent.services.queue.store import JobStore

__all__ = ["JobStore", "Scheduler", "aggregate_batch_status", "enqueue_batch", "enqueue_single", "parse_tickers"]
