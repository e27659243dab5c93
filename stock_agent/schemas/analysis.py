from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Language = Literal["en", "cn"]


class CompanyRef(BaseModel):
    name: str
    ticker: str
    exchange: str = "UNKNOWN"


class CompanyProfile(CompanyRef):
    model_config = ConfigDict(populate_by_name=True)

    current_price: str = Field(default="0.00", alias="currentPrice")
    week_change: str = Field(default="0.00%", alias="weekChange")
    month_change: str = Field(default="0.00%", alias="monthChange")


class GroundingSource(BaseModel):
    title: str = ""
    uri: str


class QnAResult(BaseModel):
    question: str
    answer: str
    sources: list[GroundingSource] = Field(default_factory=list)


class ConclusionSection(BaseModel):
    summary: str
    evidence: list[str] = Field(default_factory=list)


class InvestmentConclusion(BaseModel):
    UpstreamSupplyChain: ConclusionSection
    MarketPosition: ConclusionSection
    BusinessModel: ConclusionSection
    Financials: ConclusionSection
    OutlookRisks: ConclusionSection


class FinalConclusionPoint(BaseModel):
    argument: str
    evidence: list[str] = Field(default_factory=list)


class FinalConclusion(BaseModel):
    overall_conclusion: str
    bullet_points: list[FinalConclusionPoint] = Field(default_factory=list)


class CompanyAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    profile: CompanyProfile
    status: Literal["pending", "generating_questions", "answering_questions", "synthesizing", "complete", "error"] = "complete"
    questions: list[str] = Field(default_factory=list)
    qna: list[QnAResult] = Field(default_factory=list)
    conclusion: InvestmentConclusion | None = None
    final_conclusion: FinalConclusion | None = Field(default=None, alias="finalConclusion")
    follow_up_questions: list[str] = Field(default_factory=list, alias="followUpQuestions")
    error: str | None = None


class AnalysisState(BaseModel):
    """The report document stored as a completed job's result."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    timestamp: str
    status: Literal["idle", "finding_companies", "analyzing", "complete", "error"] = "complete"
    language: Language
    query: str
    focus_company: CompanyAnalysis | None = Field(default=None, alias="focusCompany")
    candidate_companies: list[CompanyAnalysis] = Field(default_factory=list, alias="candidateCompanies")
    error: str | None = None
    current_stage: str = Field(default="", alias="currentStage")
    current_progress: int = Field(default=0, alias="currentProgress")
