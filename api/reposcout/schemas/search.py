from typing import Optional

from pydantic import BaseModel, Field

from reposcout.schemas.judge import JudgeStats


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=5)
    min_score: float = Field(default=0.65, ge=0.0, le=1.0)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000, description="Query for the first round")
    natural_language_request: Optional[str] = Field(
        default=None, max_length=4000,
        description="Intent passed to the judge (defaults to the session's request)",
    )
    base_keywords: bool = Field(default=True, description="Expand with the template strategies")
    max_results: int = Field(default=30, ge=1, le=100)
    search_within_sessions: list[str] = Field(
        default_factory=list, max_length=20,
        description="Force-include repositories found by these sessions",
    )
    exclude_attempt_ids: list[int] = Field(
        default_factory=list, max_length=50,
        description="Drop repositories already surfaced by these attempts of this session",
    )
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class RoundCost(BaseModel):
    latency_ms: int
    judge_prompt_tokens: int = 0
    judge_completion_tokens: int = 0
    github_requests: int = 0


class AttemptSummary(BaseModel):
    attempt_id: int
    result_group: int
    query: str
    expanded_queries: list[str]
    judge_findings: str
    recommendations: list[str]
    stats: JudgeStats
    total_repos: int
    cost: RoundCost


class SearchLifecycleResponse(BaseModel):
    session_id: str
    outcome: str
    attempts: list[AttemptSummary]


class SearchAccepted(BaseModel):
    session_id: str
    query: str
    status: str = "accepted"
