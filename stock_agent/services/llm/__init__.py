from stock_agent.services.llm.openai_client import OpenAIResearchClient

__all__ = ["OpenAIResearchClient"]
