"""Repository model.

Normalized GitHub repository, keyed by the provider's node id. Shared by all
sessions: inserts replace the previous snapshot instead of duplicating it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Repo(Base):
    __tablename__ = "repos"

    # GitHub node_id: opaque, case-sensitive, stable across renames
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    html_url: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stars: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    topics: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # README validation token for conditional requests
    etag: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
