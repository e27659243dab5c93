import asyncio
import logging

from stock_agent.core.errors import ExecutionFailure
from stock_agent.models.common import utcnow
from stock_agent.models.job import AnalysisJob
from stock_agent.schemas.analysis import AnalysisState, CompanyAnalysis, CompanyProfile, CompanyRef, Language, QnAResult
from stock_agent.services.analysis.types import MarketDataProvider, ProgressWindow, ResearchClient
from stock_agent.services.queue.scheduler import ProgressReporter

logger = logging.getLogger(__name__)

DISCOVERY_END = 20.0
ENRICHMENT_END = 25.0


class AnalysisExecutor:
    """Runs the research pipeline for one job.

    Discovery resolves the focus company and up to ``max_competitors``
    peers, enrichment attaches market data, then each company gets its
    own question/answer/thesis pass. The whole result is returned at the
    end; nothing partial is persisted if a step fails.
    """

    def __init__(
        self,
        research_client: ResearchClient,
        market_data: MarketDataProvider,
        *,
        questions_per_company: int = 10,
        max_competitors: int = 2,
    ) -> None:
        self.research_client = research_client
        self.market_data = market_data
        self.questions_per_company = questions_per_company
        self.max_competitors = max_competitors

    async def run(self, job: AnalysisJob, report: ProgressReporter) -> AnalysisState:
        language: Language = "cn" if job.language == "cn" else "en"
        query = job.query or job.ticker

        await report(0, "Starting Analysis", f"Query: {query}")
        companies = await self._discover(query, language, report)

        await report(DISCOVERY_END, "Fetching Financial Data", f"Enriching {len(companies)} company profiles")
        profiles = await asyncio.gather(*(self._enrich(company) for company in companies))
        await report(ENRICHMENT_END, "Financial Data Loaded", "All company profiles enriched")

        span = (100.0 - ENRICHMENT_END) / len(profiles)
        analyses: list[CompanyAnalysis] = []
        for idx, profile in enumerate(profiles):
            label = "Focus Company" if idx == 0 else f"Candidate {idx}"
            window = ProgressWindow(ENRICHMENT_END + idx * span, ENRICHMENT_END + (idx + 1) * span)
            analyses.append(await self._analyze_company(profile, language, label, window, report))

        await report(100, "Analysis Complete", f"Completed analysis for {len(profiles)} companies")
        return AnalysisState(
            id=job.id,
            timestamp=utcnow().isoformat(),
            status="complete",
            language=language,
            query=query,
            focus_company=analyses[0],
            candidate_companies=analyses[1:],
            current_stage="Analysis Complete",
            current_progress=100,
        )

    async def _discover(self, query: str, language: Language, report: ProgressReporter) -> list[CompanyRef]:
        await report(5, "Searching for Companies", f"Looking up ticker: {query}")
        exact = await self.market_data.search_ticker(query)

        if exact is not None:
            await report(10, "Finding Competitors", f"Found exact match: {exact.name} ({exact.ticker})")
            competitors = await self.research_client.find_competitors(exact, language, self.max_competitors)
            peers = [c for c in competitors if c.ticker.upper() != exact.ticker.upper()][: self.max_competitors]
            companies = [exact, *peers]
            await report(DISCOVERY_END, "Competitors Found", f"Found {len(peers)} competitors")
        else:
            await report(10, "Searching by Concept", "No exact match found, searching by concept")
            found = await self.research_client.find_companies_by_concept(query, language, self.max_competitors)
            companies = found[: self.max_competitors + 1]
            await report(DISCOVERY_END, "Companies Found", f"Found {len(companies)} companies")

        if not companies:
            raise ExecutionFailure("Could not identify any companies for the given query.")
        return companies

    async def _enrich(self, company: CompanyRef) -> CompanyProfile:
        try:
            return await self.market_data.get_financial_data(company)
        except Exception:  # noqa: BLE001
            logger.warning("market_data_unavailable", extra={"ticker": company.ticker}, exc_info=True)
            return CompanyProfile(name=company.name, ticker=company.ticker, exchange=company.exchange)

    async def _analyze_company(
        self,
        profile: CompanyProfile,
        language: Language,
        label: str,
        window: ProgressWindow,
        report: ProgressReporter,
    ) -> CompanyAnalysis:
        name = profile.name

        await report(window.at(0.0), f"{label}: Deconstructing narrative...", f"Analyzing {name} ({profile.ticker})")
        questions = await self.research_client.generate_questions(name, language, self.questions_per_company)
        questions = questions[: self.questions_per_company]
        if not questions:
            raise ExecutionFailure(f"No research questions were generated for {name}.")
        await report(window.at(0.10), f"{label}: Questions Generated", f"Created {len(questions)} research questions")

        qna: list[QnAResult] = []
        total = len(questions)
        for idx, question in enumerate(questions):
            await report(
                window.at(0.10 + 0.60 * idx / total),
                f"{label}: Answering Question {idx + 1}/{total}",
                question[:60] + ("..." if len(question) > 60 else ""),
            )
            answer = await self.research_client.answer_question(question, name, language)
            qna.append(answer)
            await report(
                window.at(0.10 + 0.60 * (idx + 1) / total),
                f"{label}: Question {idx + 1} Answered",
                f"Found {len(answer.sources)} sources",
            )

        await report(window.at(0.70), f"{label}: Synthesizing final report...", "Generating investment thesis")
        conclusion = await self.research_client.synthesize_conclusion(name, qna, language)
        await report(window.at(0.85), f"{label}: Conclusion Synthesized", "Investment thesis generated")

        final_conclusion = await self.research_client.generate_final_conclusion(name, qna, language)
        await report(window.at(1.0), f"{label}: Analysis Complete", f"{name} analysis finished")

        return CompanyAnalysis(
            id=profile.ticker,
            profile=profile,
            status="complete",
            questions=questions,
            qna=qna,
            conclusion=conclusion,
            final_conclusion=final_conclusion,
        )
