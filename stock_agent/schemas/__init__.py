from stock_agent.schemas.analysis import AnalysisState, CompanyAnalysis, CompanyProfile, CompanyRef, QnAResult
from stock_agent.schemas.job import (
    BatchCreateRequest,
    BatchCreateResponse,
    BatchRead,
    BatchStats,
    JobCreateRequest,
    JobListResponse,
    JobRead,
    QueueStats,
)

__all__ = [
    "AnalysisState",
    "CompanyAnalysis",
    "CompanyProfile",
    "CompanyRef",
    "QnAResult",
    "BatchCreateRequest",
    "BatchCreateResponse",
    "BatchRead",
    "BatchStats",
    "JobCreateRequest",
    "JobListResponse",
    "JobRead",
    "QueueStats",
]
