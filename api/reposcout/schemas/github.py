"""Validated value types for GitHub payloads.

Raw provider JSON is turned into these at the client boundary; nothing past
the retrieval client sees an unchecked dict.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitHubRepository(BaseModel):
    """A repository as returned by ``GET /search/repositories``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    node_id: str = Field(min_length=1)
    full_name: str = Field(min_length=1)
    html_url: str
    description: Optional[str] = None
    stargazers_count: int = 0
    language: Optional[str] = None
    topics: list[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    default_branch: Optional[str] = None
    etag: Optional[str] = None

    @field_validator("topics", mode="before")
    @classmethod
    def _topics_list(cls, value):
        return value if isinstance(value, list) else []

    @property
    def key(self) -> str:
        return self.node_id


class RepoPreview(BaseModel):
    """Compact form streamed to live observers."""

    full_name: str
    html_url: str
    description: Optional[str] = None
