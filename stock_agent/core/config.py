from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Stock Research Agent API"
    environment: Literal["dev", "test", "prod"] = "dev"
    debug: bool = False
    log_level: str = "INFO"

    database_url: str = "sqlite:///./stock_agent.db"
    auto_create_tables: bool = True

    # Queue
    run_scheduler: bool = True
    max_concurrent_jobs: int = Field(default=2, ge=1)
    requeue_delay_seconds: float = 0.1
    watchdog_interval_seconds: float = 10.0
    error_backoff_seconds: float = 5.0
    default_page_size: int = 50
    max_page_size: int = 200

    # Research client
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 120.0
    questions_per_company: int = 10
    max_competitors: int = 2

    # Market data
    market_data_quote_url: str = "https://qt.gtimg.cn/q="
    market_data_kline_url: str = "https://web.ifzq.gtimg.cn/appstock/app/fqkline/get"
    market_data_timeout_seconds: float = 10.0

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    rate_limit_per_minute: int = 600


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
