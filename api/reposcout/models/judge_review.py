"""Judge review model: one overall finding per attempt."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .search_attempt import SearchAttempt


class JudgeReview(Base):
    __tablename__ = "judge_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    search_attempt_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("search_attempts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    overall_judge_findings: Mapped[str] = mapped_column(Text, nullable=False)
    # Ordered follow-up queries, most promising first
    judge_recommendations: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    attempt: Mapped["SearchAttempt"] = relationship("SearchAttempt", back_populates="review")
