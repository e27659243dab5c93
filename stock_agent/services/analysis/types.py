from dataclasses import dataclass
from typing import Protocol

from stock_agent.schemas.analysis import (
    CompanyProfile,
    CompanyRef,
    FinalConclusion,
    InvestmentConclusion,
    Language,
    QnAResult,
)


class ResearchClient(Protocol):
    async def find_competitors(self, focus: CompanyRef, language: Language, limit: int) -> list[CompanyRef]: ...

    async def find_companies_by_concept(self, query: str, language: Language, limit: int) -> list[CompanyRef]: ...

    async def generate_questions(self, company_name: str, language: Language, count: int) -> list[str]: ...

    async def answer_question(self, question: str, company_name: str, language: Language) -> QnAResult: ...

    async def synthesize_conclusion(
        self, company_name: str, qna: list[QnAResult], language: Language
    ) -> InvestmentConclusion: ...

    async def generate_final_conclusion(
        self, company_name: str, qna: list[QnAResult], language: Language
    ) -> FinalConclusion: ...


class MarketDataProvider(Protocol):
    async def search_ticker(self, query: str) -> CompanyRef | None: ...

    async def get_financial_data(self, company: CompanyRef) -> CompanyProfile: ...


@dataclass(slots=True)
class ProgressWindow:
    """Maps a 0..1 fraction of one pipeline stage onto the job's overall percentage."""

    start: float
    end: float

    def at(self, fraction: float) -> float:
        fraction = min(max(fraction, 0.0), 1.0)
        return self.start + (self.end - self.start) * fraction
