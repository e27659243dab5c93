from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_agent.db.base import Base
from stock_agent.models.common import TimestampMixin, UUIDPrimaryKeyMixin


class BatchJob(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "batch_jobs"

    tickers: Mapped[str] = mapped_column(Text, nullable=False)
    language: Mapped[str] = mapped_column(String(8), default="en", nullable=False)

    jobs = relationship(
        "AnalysisJob",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="AnalysisJob.created_at",
    )
