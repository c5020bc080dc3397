"""Judge request digest and strictly validated judge verdict."""

from typing import Optional

from pydantic import BaseModel, Field

# Digest bounds
MAX_JUDGE_REPOS = 20
README_EXCERPT_CHARS = 2000


class JudgeRequestRepo(BaseModel):
    full_name: str
    html_url: str
    description: Optional[str] = None
    stars: int = 0
    language: Optional[str] = None
    topics: list[str] = Field(default_factory=list)
    readme_excerpt: Optional[str] = None


class JudgeRequest(BaseModel):
    natural_language_request: str
    repos: list[JudgeRequestRepo] = Field(max_length=MAX_JUDGE_REPOS)


class RepoVerdict(BaseModel):
    full_name: str
    score: float = Field(ge=0.0, le=1.0)
    note: str = Field(max_length=240)


class JudgeVerdict(BaseModel):
    overall_findings: str = Field(max_length=500)
    recommendations: list[str] = Field(min_length=1, max_length=5)
    per_repo: list[RepoVerdict] = Field(min_length=1)


class JudgeStats(BaseModel):
    median: float
    top5_mean: float
