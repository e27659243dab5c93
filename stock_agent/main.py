from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Deque

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from stock_agent.core.config import Settings, get_settings
from stock_agent.core.errors import BatchNotFound, JobNotFound, ValidationError
from stock_agent.core.logging import configure_logging
from stock_agent.db.base import Base
from stock_agent.db.session import SessionLocal
from stock_agent.routers import history, jobs
from stock_agent.services.analysis.executor import AnalysisExecutor
from stock_agent.services.analysis.types import MarketDataProvider, ResearchClient
from stock_agent.services.llm import OpenAIResearchClient
from stock_agent.services.market_data import TencentMarketData
from stock_agent.services.queue.scheduler import Scheduler
from stock_agent.services.queue.store import JobStore


class RateLimiter:
    def __init__(self, limit_per_minute: int) -> None:
        self.limit_per_minute = limit_per_minute
        self._hits: dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, key: str) -> bool:
        now = datetime.now(timezone.utc).timestamp()
        window_start = now - 60
        bucket = self._hits[key]
        while bucket and bucket[0] < window_start:
            bucket.popleft()
        if len(bucket) >= self.limit_per_minute:
            return False
        bucket.append(now)
        return True


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
    research_client: ResearchClient | None = None,
    market_data: MarketDataProvider | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    session_factory = session_factory or SessionLocal
    research_client = research_client or OpenAIResearchClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.openai_timeout_seconds,
    )
    market_data = market_data or TencentMarketData(
        quote_url=settings.market_data_quote_url,
        kline_url=settings.market_data_kline_url,
        timeout=settings.market_data_timeout_seconds,
    )
    store = JobStore(session_factory)
    executor = AnalysisExecutor(
        research_client,
        market_data,
        questions_per_company=settings.questions_per_company,
        max_competitors=settings.max_competitors,
    )
    scheduler = Scheduler(
        store,
        executor,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        requeue_delay_seconds=settings.requeue_delay_seconds,
        watchdog_interval_seconds=settings.watchdog_interval_seconds,
        error_backoff_seconds=settings.error_backoff_seconds,
    )
    app.state.job_store = store
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = RateLimiter(settings.rate_limit_per_minute)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        key = request.client.host if request.client else "unknown"
        if not limiter.hit(key):
            return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")
        return await call_next(request)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return _error(status.HTTP_400_BAD_REQUEST, f"{field}: {message}" if field else message)

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "Job not found")

    @app.exception_handler(BatchNotFound)
    async def batch_not_found_handler(request: Request, exc: BatchNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "Batch job not found")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    app.include_router(jobs.router)
    app.include_router(history.router)

    @app.on_event("startup")
    async def startup() -> None:
        if settings.auto_create_tables:
            Base.metadata.create_all(bind=session_factory.kw["bind"])
        if settings.run_scheduler:
            await scheduler.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await scheduler.stop()
        close = getattr(market_data, "aclose", None)
        if close is not None:
            await close()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "scheduler_running": scheduler.is_running}

    return app


app = create_app()
