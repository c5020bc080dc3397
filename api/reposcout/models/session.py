"""Search session model.

One row per user intent. Immutable apart from the soft-delete marker; owns
the attempts (rounds) run on its behalf.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .search_attempt import SearchAttempt


class SearchSession(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    natural_language_request: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    attempts: Mapped[list["SearchAttempt"]] = relationship(
        "SearchAttempt", back_populates="session", order_by="SearchAttempt.id"
    )
