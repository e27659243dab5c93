import asyncio

import pytest

from stock_agent.core.errors import ExecutionFailure
from stock_agent.models.job import AnalysisJob
from stock_agent.services.analysis.executor import AnalysisExecutor
from stock_agent.services.analysis.types import ProgressWindow
from tests.conftest import FakeMarketData, FakeResearchClient


class RecordingReporter:
    def __init__(self):
        self.events: list[tuple[float, str, str | None]] = []

    async def __call__(self, progress, step, log=None):
        self.events.append((progress, step, log))

    @property
    def percentages(self):
        return [progress for progress, _, _ in self.events]


def _job(query, language="en"):
    return AnalysisJob(id="job-1", ticker=query, query=query, language=language)


def _run(executor, job):
    reporter = RecordingReporter()
    state = asyncio.run(executor.run(job, reporter))
    return state, reporter


def test_exact_ticker_analyzes_focus_and_competitors():
    research = FakeResearchClient()
    executor = AnalysisExecutor(research, FakeMarketData(), questions_per_company=3)

    state, reporter = _run(executor, _job("AAPL"))

    assert state.id == "job-1"
    assert state.status == "complete"
    assert state.current_progress == 100
    assert state.focus_company.profile.ticker == "AAPL"
    assert [c.profile.ticker for c in state.candidate_companies] == ["MSFT", "GOOGL"]
    assert len(state.focus_company.qna) == 3
    assert state.focus_company.conclusion.Financials.summary == "Apple Inc. summary"
    assert ("find_companies_by_concept", "AAPL") not in research.calls

    assert reporter.percentages[0] == 0
    assert reporter.percentages[-1] == 100
    assert reporter.percentages == sorted(reporter.percentages)
    assert reporter.events[-1][1] == "Analysis Complete"


def test_concept_query_falls_back_to_research_discovery():
    executor = AnalysisExecutor(FakeResearchClient(), FakeMarketData(), questions_per_company=1)

    state, reporter = _run(executor, _job("AI chips", language="cn"))

    assert state.language == "cn"
    assert state.query == "AI chips"
    assert state.focus_company.profile.ticker == "NVDA"
    assert len(state.candidate_companies) == 2
    assert any(step == "Searching by Concept" for _, step, _ in reporter.events)


def test_max_competitors_limits_candidates():
    executor = AnalysisExecutor(FakeResearchClient(), FakeMarketData(), questions_per_company=1, max_competitors=1)

    state, _ = _run(executor, _job("AAPL"))

    assert [c.profile.ticker for c in state.candidate_companies] == ["MSFT"]


def test_no_companies_found_fails_the_job():
    executor = AnalysisExecutor(FakeResearchClient(), FakeMarketData())

    with pytest.raises(ExecutionFailure, match="Could not identify any companies"):
        _run(executor, _job("nothing"))


def test_market_data_failure_degrades_to_default_profile():
    executor = AnalysisExecutor(FakeResearchClient(), FakeMarketData(broken={"MSFT"}), questions_per_company=1)

    state, _ = _run(executor, _job("AAPL"))

    msft = state.candidate_companies[0].profile
    assert msft.ticker == "MSFT"
    assert msft.current_price == "0.00"
    assert msft.week_change == "0.00%"
    assert state.focus_company.profile.current_price == "123.45"


def test_research_failure_propagates():
    executor = AnalysisExecutor(FakeResearchClient(fail_on="Microsoft Corporation"), FakeMarketData())
    reporter = RecordingReporter()

    with pytest.raises(RuntimeError, match="Research service unavailable"):
        asyncio.run(executor.run(_job("AAPL"), reporter))
    assert max(reporter.percentages) < 100


def test_progress_window_clamps_fraction():
    window = ProgressWindow(25, 50)

    assert window.at(0) == 25
    assert window.at(0.5) == 37.5
    assert window.at(2) == 50
