from fastapi import Request

from stock_agent.services.queue.scheduler import Scheduler
from stock_agent.services.queue.store import JobStore


def get_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler
