import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["AUTO_CREATE_TABLES"] = "true"
os.environ["RUN_SCHEDULER"] = "true"
os.environ["OPENAI_API_KEY"] = ""
os.environ["QUESTIONS_PER_COMPANY"] = "3"
os.environ["REQUEUE_DELAY_SECONDS"] = "0.01"
os.environ["WATCHDOG_INTERVAL_SECONDS"] = "0.5"
os.environ["ERROR_BACKOFF_SECONDS"] = "0.1"

from stock_agent.db.base import Base
from stock_agent.db.session import SessionLocal, engine
from stock_agent.main import create_app
from stock_agent.schemas.analysis import (
    CompanyProfile,
    CompanyRef,
    ConclusionSection,
    FinalConclusion,
    FinalConclusionPoint,
    GroundingSource,
    InvestmentConclusion,
    QnAResult,
)
from stock_agent.services.queue.store import JobStore

KNOWN_TICKERS = {
    "AAPL": CompanyRef(name="Apple Inc.", ticker="AAPL", exchange="NASDAQ"),
    "MSFT": CompanyRef(name="Microsoft Corporation", ticker="MSFT", exchange="NASDAQ"),
    "GOOGL": CompanyRef(name="Alphabet Inc.", ticker="GOOGL", exchange="NASDAQ"),
    "NVDA": CompanyRef(name="NVIDIA Corporation", ticker="NVDA", exchange="NASDAQ"),
}


class FakeResearchClient:
    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.calls: list[tuple[str, str]] = []

    async def find_competitors(self, focus, language, limit=2):
        self.calls.append(("find_competitors", focus.ticker))
        peers = [ref for ticker, ref in KNOWN_TICKERS.items() if ticker != focus.ticker]
        return [focus, *peers][: limit + 1]

    async def find_companies_by_concept(self, query, language, limit=2):
        self.calls.append(("find_companies_by_concept", query))
        if query.lower() == "nothing":
            return []
        return [KNOWN_TICKERS["NVDA"], KNOWN_TICKERS["MSFT"], KNOWN_TICKERS["GOOGL"]][: limit + 1]

    async def generate_questions(self, company_name, language, count=10):
        self.calls.append(("generate_questions", company_name))
        if self.fail_on == company_name:
            raise RuntimeError(f"Research service unavailable for {company_name}")
        return [f"Question {idx + 1} about {company_name}?" for idx in range(count)]

    async def answer_question(self, question, company_name, language):
        self.calls.append(("answer_question", company_name))
        return QnAResult(
            question=question,
            answer=f"Answer for {company_name}.",
            sources=[GroundingSource(title="Filing", uri="https://example.com/filing")],
        )

    async def synthesize_conclusion(self, company_name, qna, language):
        self.calls.append(("synthesize_conclusion", company_name))
        section = ConclusionSection(summary=f"{company_name} summary", evidence=[qna[0].answer])
        return InvestmentConclusion(
            UpstreamSupplyChain=section,
            MarketPosition=section,
            BusinessModel=section,
            Financials=section,
            OutlookRisks=section,
        )

    async def generate_final_conclusion(self, company_name, qna, language):
        self.calls.append(("generate_final_conclusion", company_name))
        return FinalConclusion(
            overall_conclusion="Hold",
            bullet_points=[FinalConclusionPoint(argument="Stable margins", evidence=["Gross margin 45%"])],
        )


class FakeMarketData:
    def __init__(self, broken: set[str] | None = None) -> None:
        self.broken = broken or set()

    async def search_ticker(self, query):
        return KNOWN_TICKERS.get(query.strip().upper())

    async def get_financial_data(self, company):
        if company.ticker in self.broken:
            raise RuntimeError("quote endpoint down")
        return CompanyProfile(
            name=company.name,
            ticker=company.ticker,
            exchange=company.exchange,
            current_price="123.45",
            week_change="+1.20%",
            month_change="-0.50%",
        )


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    path = Path("test.db")
    if path.exists():
        path.unlink()


@pytest.fixture()
def store():
    return JobStore(SessionLocal)


@pytest.fixture()
def research_client():
    return FakeResearchClient()


@pytest.fixture()
def market_data():
    return FakeMarketData()


@pytest.fixture()
def client(research_client, market_data):
    app = create_app(research_client=research_client, market_data=market_data)
    with TestClient(app) as test_client:
        yield test_client
