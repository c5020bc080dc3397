"""Search attempt model.

One row per round. ``result_group`` is the per-session sequence number
(1, 2, 3, ...) and is unique within a session. The expanded query list, its
hash, and the judge/strategy versions make a round reproducible. Cost columns
are filled once the round finishes.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .judge_review import JudgeReview
    from .session import SearchSession


class SearchAttempt(Base):
    __tablename__ = "search_attempts"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "result_group",
            name="uq_search_attempts_session_group",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    result_group: Mapped[int] = mapped_column(Integer, nullable=False)
    search_query: Mapped[str] = mapped_column(Text, nullable=False)
    expanded_queries: Mapped[list] = mapped_column(JSON, nullable=False)
    query_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Reproducibility metadata
    judge_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    judge_model_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    search_strategy_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Round cost/latency record
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    judge_prompt_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    judge_completion_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    github_requests: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    session: Mapped["SearchSession"] = relationship("SearchSession", back_populates="attempts")
    review: Mapped[Optional["JudgeReview"]] = relationship(
        "JudgeReview", back_populates="attempt", uselist=False
    )
