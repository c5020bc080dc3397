"""Live channel event variants.

Outbound events form a tagged union on ``type``; inbound messages are parsed
the same way so unknown or malformed frames are rejected at the socket.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from reposcout.schemas.github import RepoPreview
from reposcout.schemas.judge import JudgeStats, RepoVerdict
from reposcout.schemas.search import RetryPolicy


class AttemptStarted(BaseModel):
    type: Literal["attempt_started"] = "attempt_started"
    attempt_id: int
    result_group: int
    search_query: str
    expanded_queries: list[str]


class GithubBatch(BaseModel):
    type: Literal["github_batch"] = "github_batch"
    attempt_id: int
    count: int
    repos: list[RepoPreview]


class JudgeUpdate(BaseModel):
    type: Literal["judge_update"] = "judge_update"
    attempt_id: int
    stats: JudgeStats
    findings: str
    recommendations: list[str]
    per_repo: list[RepoVerdict] = Field(default_factory=list)


class RefinedSearch(BaseModel):
    type: Literal["refined_search"] = "refined_search"
    previous_query: str
    new_query: str


class Finalized(BaseModel):
    type: Literal["finalized"] = "finalized"
    attempt_id: int
    result_group: int
    total: int
    threshold: float
    median: float
    final: bool = False
    outcome: Optional[str] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str


class Ack(BaseModel):
    type: Literal["ack"] = "ack"
    attempt_id: Optional[int] = None


LiveEvent = Annotated[
    Union[AttemptStarted, GithubBatch, JudgeUpdate, RefinedSearch, Finalized, ErrorEvent, Ack],
    Field(discriminator="type"),
]


class StartSearch(BaseModel):
    type: Literal["start_search"]
    query: str = Field(min_length=1, max_length=1000)
    base_keywords: bool = True
    max_results: int = Field(default=30, ge=1, le=100)
    search_within_sessions: list[str] = Field(default_factory=list, max_length=20)
    exclude_attempt_ids: list[int] = Field(default_factory=list, max_length=50)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class CancelAttempt(BaseModel):
    type: Literal["cancel_attempt"]
    attempt_id: Optional[int] = None


InboundMessage = Annotated[Union[StartSearch, CancelAttempt], Field(discriminator="type")]
