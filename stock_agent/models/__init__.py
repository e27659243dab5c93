from stock_agent.models.batch import BatchJob
from stock_agent.models.job import AnalysisJob, JobStatus

__all__ = ["BatchJob", "AnalysisJob", "JobStatus"]
