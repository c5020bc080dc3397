"""Search result model.

Associates a repository with the attempt that surfaced it. The
(session, attempt, repo) triple is unique; re-inserting it is a no-op.
Score and finding stay null until the judge has reviewed the round.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SearchResult(Base):
    __tablename__ = "search_results"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "search_attempt_id", "repo_id",
            name="uq_search_results_session_attempt_repo",
        ),
        Index("ix_search_results_session_repo", "session_id", "repo_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    search_attempt_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("search_attempts.id", ondelete="CASCADE"), nullable=False
    )
    repo_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("repos.id", ondelete="CASCADE"), nullable=False
    )
    repo_url: Mapped[str] = mapped_column(Text, nullable=False)
    readme_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    judge_finding: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    judge_relevance_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    # Position within the round (dedupe order)
    batch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
