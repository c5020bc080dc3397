from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionCreate(BaseModel):
    natural_language_request: str = Field(min_length=1, max_length=4000)
    session_id: Optional[str] = Field(default=None, pattern=r"^[0-9a-fA-F-]{36}$")


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    natural_language_request: str
    created_at: datetime
    deleted_at: Optional[datetime] = None


class SessionList(BaseModel):
    items: list[SessionResponse]
    next_cursor: Optional[str] = None


class AttemptListItem(BaseModel):
    attempt_id: int
    result_group: int
    search_query: str
    expanded_queries: list[str]
    query_hash: Optional[str] = None
    created_at: datetime
    judge_summary: Optional[str] = None
    recommendations: list[str] = Field(default_factory=list)
    latency_ms: Optional[int] = None


class SessionDetail(BaseModel):
    session: SessionResponse
    attempts_count: int
    results_count: int
    latest_attempt: Optional[AttemptListItem] = None


class AttemptList(BaseModel):
    attempts: list[AttemptListItem]


class ResultRepo(BaseModel):
    id: str
    full_name: str
    html_url: str
    description: Optional[str] = None
    stars: Optional[int] = None
    language: Optional[str] = None
    topics: list[str] = Field(default_factory=list)


class ResultItem(BaseModel):
    id: int
    session_id: str
    search_attempt_id: int
    repo_id: str
    repo_url: str
    judge_finding: Optional[str] = None
    judge_relevance_score: Optional[float] = None
    batch_id: Optional[int] = None
    inserted_at: datetime
    repo: Optional[ResultRepo] = None


class ResultList(BaseModel):
    items: list[ResultItem]
    next_cursor: Optional[str] = None
