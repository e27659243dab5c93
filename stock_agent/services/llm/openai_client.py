import json
import logging
from typing import Any, TypeVar

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from stock_agent.core.errors import CollaboratorError
from stock_agent.schemas.analysis import (
    CompanyRef,
    FinalConclusion,
    GroundingSource,
    InvestmentConclusion,
    Language,
    QnAResult,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MARKETS = "US, Hong Kong, or A-share markets"


class _Competitors(BaseModel):
    competitors: list[CompanyRef] = Field(default_factory=list)


class _ConceptMatch(BaseModel):
    focusCompany: CompanyRef
    candidateCompanies: list[CompanyRef] = Field(default_factory=list)


class _Questions(BaseModel):
    questions: list[str]


class _Answer(BaseModel):
    answer: str
    sources: list[GroundingSource] = Field(default_factory=list)


def _output_language(language: Language) -> str:
    return "Simplified Chinese" if language == "cn" else "English"


def _qna_context(qna: list[QnAResult]) -> str:
    return json.dumps([{"question": item.question, "answer": item.answer} for item in qna], ensure_ascii=False)


class OpenAIResearchClient:
    """Research client backed by OpenAI chat completions in JSON mode."""

    def __init__(self, api_key: str, model: str, timeout: float = 120.0, client: AsyncOpenAI | None = None) -> None:
        self.model = model
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.client = client

    async def find_competitors(self, focus: CompanyRef, language: Language, limit: int = 2) -> list[CompanyRef]:
        prompt = (
            f'The user\'s focus company is "{focus.name} ({focus.ticker})". '
            f"Identify {limit} of its main publicly traded competitors from {MARKETS}. "
            f"Company names must be in {_output_language(language)}. "
            'Return JSON only: {"competitors": [{"name": str, "ticker": str, "exchange": str}]}'
        )
        result = await self._request_model(prompt, _Competitors)
        return result.competitors[:limit]

    async def find_companies_by_concept(self, query: str, language: Language, limit: int = 2) -> list[CompanyRef]:
        prompt = (
            f'The user searched for the concept "{query}" and no ticker matched directly. '
            "Identify the single most prominent publicly traded company related to this concept as the focus "
            f"company, plus {limit} other relevant publicly traded competitors. All companies must be from {MARKETS}. "
            f"Company names must be in {_output_language(language)}. "
            'Return JSON only: {"focusCompany": {"name": str, "ticker": str, "exchange": str}, '
            '"candidateCompanies": [{"name": str, "ticker": str, "exchange": str}]}'
        )
        result = await self._request_model(prompt, _ConceptMatch)
        return [result.focusCompany, *result.candidateCompanies[:limit]]

    async def generate_questions(self, company_name: str, language: Language, count: int = 10) -> list[str]:
        prompt = (
            f"Generate exactly {count} critical investment research questions in {_output_language(language)} "
            f'about "{company_name}". Cover: supply chain, market position, business model, financials, '
            "growth drivers, competitive advantages, risks, management, recent news, and valuation. "
            'Return JSON only: {"questions": [str]}'
        )
        result = await self._request_model(prompt, _Questions)
        return result.questions[:count]

    async def answer_question(self, question: str, company_name: str, language: Language) -> QnAResult:
        prompt = (
            f'As a financial analyst, answer this question about "{company_name}" in {_output_language(language)}: '
            f'"{question}". Provide a detailed, data-driven answer using the most recent information you have and '
            'cite your sources. Return JSON only: {"answer": str, "sources": [{"title": str, "uri": str}]}'
        )
        result = await self._request_model(prompt, _Answer)
        return QnAResult(question=question, answer=result.answer, sources=result.sources)

    async def synthesize_conclusion(
        self, company_name: str, qna: list[QnAResult], language: Language
    ) -> InvestmentConclusion:
        prompt = (
            f'Based on this Q&A for "{company_name}", synthesize an investment thesis in {_output_language(language)}. '
            'Structure it into "UpstreamSupplyChain", "MarketPosition", "BusinessModel", "Financials" and '
            '"OutlookRisks"; each is {"summary": str, "evidence": [str]} with key evidence from the Q&A. '
            f"Return JSON only. Q&A: {_qna_context(qna)}"
        )
        return await self._request_model(prompt, InvestmentConclusion)

    async def generate_final_conclusion(
        self, company_name: str, qna: list[QnAResult], language: Language
    ) -> FinalConclusion:
        prompt = (
            f'You are a senior investment analyst. Based on the following Q&A for "{company_name}", give a final, '
            f"decisive investment conclusion in {_output_language(language)}: a one-sentence overall conclusion "
            "(e.g. 'Strong Buy', 'Hold', 'Speculative Buy', 'Sell') and 3-5 key arguments, each citing specific, "
            "quantitative evidence from the Q&A. "
            'Return JSON only: {"overall_conclusion": str, "bullet_points": [{"argument": str, "evidence": [str]}]}. '
            f"Q&A Context: {_qna_context(qna)}"
        )
        return await self._request_model(prompt, FinalConclusion)

    async def _request_model(self, prompt: str, model: type[ModelT]) -> ModelT:
        raw = await self._request_json(
            system_prompt="You are an equity research assistant. Respond with a single valid JSON object.",
            user_prompt=prompt,
        )
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("llm_schema_mismatch", extra={"schema": model.__name__, "error": str(exc)})
            repaired = await self._request_json_repair(raw, model)
            try:
                return model.model_validate(repaired)
            except ValidationError as repair_exc:
                raise CollaboratorError(f"Research response did not match {model.__name__}") from repair_exc

    async def _request_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        if self.client is None:
            raise CollaboratorError("OPENAI_API_KEY is not configured.")
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except OpenAIError as exc:
            raise CollaboratorError(f"Research request failed: {exc}") from exc
        content = completion.choices[0].message.content or "{}"
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise CollaboratorError("Research response was not valid JSON") from exc
        if not isinstance(data, dict):
            raise CollaboratorError("Research response must be a JSON object")
        return data

    async def _request_json_repair(self, invalid_json: dict[str, Any], model: type[BaseModel]) -> dict[str, Any]:
        return await self._request_json(
            system_prompt=(
                "Fix this JSON so it exactly matches the required schema and type constraints. Return JSON only."
            ),
            user_prompt=json.dumps({"schema": model.model_json_schema(), "json": invalid_json}, ensure_ascii=False),
        )
