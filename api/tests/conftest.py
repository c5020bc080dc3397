"""Shared fixtures: a throwaway SQLite store, a fake GitHub and a scripted judge."""

from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reposcout.models import Base
from reposcout.schemas.github import GitHubRepository
from reposcout.schemas.judge import JudgeVerdict, RepoVerdict
from reposcout.services.github import RetrievedCandidate
from reposcout.services.judge import JudgeResult
from reposcout.services.store import ResultStore


def raw_repo(n: int, **overrides) -> dict:
    """A /search/repositories item as GitHub returns it."""
    data = {
        "node_id": f"R_node{n}",
        "full_name": f"owner/repo-{n}",
        "html_url": f"https://github.com/owner/repo-{n}",
        "description": f"Worker template number {n}",
        "stargazers_count": 1000 - n,
        "language": "TypeScript",
        "topics": ["cloudflare-workers"],
        "updated_at": "2024-05-01T12:00:00Z",
    }
    data.update(overrides)
    return data


def make_repo(n: int, **overrides) -> GitHubRepository:
    return GitHubRepository.model_validate(raw_repo(n, **overrides))


def make_candidate(n: int, readme: str = "# readme", query: str = "q", **overrides) -> RetrievedCandidate:
    return RetrievedCandidate(repo=make_repo(n, **overrides), readme=readme, source_query=query)


def make_verdict(scores: dict[str, float], recommendations: Optional[list[str]] = None,
                 findings: str = "Reviewed.") -> JudgeVerdict:
    verdict = JudgeVerdict(
        overall_findings=findings,
        recommendations=recommendations or ["next query"],
        per_repo=[RepoVerdict(full_name=name, score=score, note=f"note for {name}")
                  for name, score in scores.items()],
    )
    if recommendations == []:
        # What JudgeClient hands back once blank recommendations are stripped
        verdict = verdict.model_copy(update={"recommendations": []})
    return verdict


class FakeGitHub:
    """httpx.MockTransport handler standing in for the GitHub REST API.

    ``results`` maps a search query to raw items; queries not listed get
    ``default``. ``readmes`` maps full_name to content, None meaning 404.
    Repositories not listed in ``readmes`` get a generic README.
    """

    def __init__(self, default: Optional[list[dict]] = None) -> None:
        self.default = default or []
        self.results: dict[str, list[dict]] = {}
        self.readmes: dict[str, Optional[str]] = {}
        self.etags: dict[str, str] = {}
        self.search_status = 200
        self.readme_status: dict[str, int] = {}
        self.search_calls: list[httpx.Request] = []
        self.readme_calls: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/search/repositories":
            self.search_calls.append(request)
            if self.search_status != 200:
                return httpx.Response(self.search_status, text="API rate limit exceeded")
            items = self.results.get(request.url.params["q"], self.default)
            per_page = int(request.url.params["per_page"])
            page = int(request.url.params["page"])
            start = (page - 1) * per_page
            return httpx.Response(200, json={"total_count": len(items), "items": items[start:start + per_page]})

        if path.startswith("/repos/") and path.endswith("/readme"):
            self.readme_calls.append(request)
            full_name = path[len("/repos/"):-len("/readme")]
            status = self.readme_status.get(full_name)
            if status is not None:
                return httpx.Response(status, text="boom")
            etag = self.etags.get(full_name, f'"etag-{full_name}"')
            if request.headers.get("If-None-Match") == etag:
                return httpx.Response(304)
            content = self.readmes.get(full_name, f"# {full_name}\nDeploy with wrangler.")
            if content is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, text=content, headers={"ETag": etag})

        return httpx.Response(404)


class ScriptedJudge:
    """Returns queued verdicts (or raises queued errors), one per call."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests = []

    async def judge(self, request) -> JudgeResult:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return JudgeResult(verdict=response, prompt_tokens=100, completion_tokens=20)


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reposcout.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    yield ResultStore(factory)
    await engine.dispose()


@pytest.fixture
def fake_github():
    return FakeGitHub(default=[raw_repo(n) for n in range(1, 4)])


@pytest_asyncio.fixture
async def github_http(fake_github):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_github.handler))
    yield client
    await client.aclose()
