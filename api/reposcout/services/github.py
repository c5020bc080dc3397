"""GitHub retrieval client.

GitHubClient wraps a shared httpx.AsyncClient for the two calls a round
needs: repository search and README fetch. RetrievalClient runs the expanded
queries of one round concurrently and decorates every hit with its README,
using stored ETags for conditional requests.

Repositories without a README are dropped from the round. An undecorated
repository cannot be judged meaningfully, so this is a filter, not a failure.
Any other non-success status aborts the round with RetrievalError; retrying
is left to the caller.
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Optional, Union

import httpx
import structlog
from pydantic import ValidationError

from reposcout.errors import RetrievalError
from reposcout.metrics import github_requests
from reposcout.schemas.github import GitHubRepository

log = structlog.get_logger(__name__)

# GitHub search never returns more than 1000 results per query
MAX_SEARCH_RESULTS = 1000
MAX_PER_PAGE = 100

SESSION_BIAS_QUERY = "session-bias"


@dataclass(frozen=True)
class Fresh:
    content: str
    etag: Optional[str]


@dataclass(frozen=True)
class NotModified:
    etag: str


@dataclass(frozen=True)
class Missing:
    pass


ReadmeLookup = Union[Fresh, NotModified, Missing]


@dataclass
class RetrievedCandidate:
    repo: GitHubRepository
    readme: str
    source_query: str


@dataclass
class RetrievalBatch:
    queries: list[str]
    candidates: list[RetrievedCandidate]
    requests: int
    excluded_without_readme: int


class GitHubClient:
    """Thin wrapper around httpx.AsyncClient for the GitHub REST API.

    One instance per round; ``requests`` counts calls for the round's cost
    record.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str = "",
        api_url: str = "https://api.github.com",
    ) -> None:
        self.client = client
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.requests = 0

    def _headers(self, accept: str = "application/vnd.github+json") -> dict:
        headers = {
            "Accept": accept,
            "User-Agent": "RepoScout",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, kind: str, url: str, **kwargs) -> httpx.Response:
        self.requests += 1
        try:
            resp = await self.client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            github_requests.labels(kind=kind, status="transport_error").inc()
            raise RetrievalError(0, f"{type(exc).__name__}: {exc}") from exc
        github_requests.labels(kind=kind, status=str(resp.status_code)).inc()
        return resp

    async def search_repositories(self, query: str, limit: int) -> list[GitHubRepository]:
        """Run one search query, paginating until ``limit`` repositories are collected.

        Raises:
            RetrievalError: On any non-2xx response or transport failure.
        """
        limit = max(1, min(limit, MAX_SEARCH_RESULTS))
        per_page = min(limit, MAX_PER_PAGE)
        repos: list[GitHubRepository] = []
        page = 1

        while len(repos) < limit:
            resp = await self._get(
                "search",
                f"{self.api_url}/search/repositories",
                params={
                    "q": query,
                    "per_page": per_page,
                    "page": page,
                    "sort": "stars",
                    "order": "desc",
                },
                headers=self._headers(),
            )
            if not resp.is_success:
                raise RetrievalError(resp.status_code, resp.text)

            try:
                items = resp.json().get("items") or []
            except ValueError as exc:
                raise RetrievalError(resp.status_code, "Search response is not JSON") from exc

            for raw in items:
                try:
                    repos.append(GitHubRepository.model_validate(raw))
                except ValidationError:
                    log.warning("github_item_malformed", query=query, node_id=raw.get("node_id"))

            if len(items) < per_page or page * per_page >= MAX_SEARCH_RESULTS:
                break
            page += 1

        return repos[:limit]

    async def fetch_readme(self, full_name: str, etag: Optional[str] = None) -> ReadmeLookup:
        """Fetch a repository README, conditionally when an ETag is known.

        Returns:
            Fresh with content and the new ETag, NotModified when the stored
            copy is still current, or Missing when the repository has no README.

        Raises:
            RetrievalError: On any other non-success status.
        """
        headers = self._headers("application/vnd.github.raw+json")
        if etag:
            headers["If-None-Match"] = etag

        resp = await self._get("readme", f"{self.api_url}/repos/{full_name}/readme", headers=headers)
        if resp.status_code == 304 and etag:
            return NotModified(etag=etag)
        if resp.status_code == 404:
            return Missing()
        if not resp.is_success:
            raise RetrievalError(resp.status_code, resp.text)

        new_etag = resp.headers.get("etag")
        if "application/json" in resp.headers.get("content-type", ""):
            data = resp.json()
            if isinstance(data, dict) and "content" in data:
                content = base64.b64decode(data["content"]).decode("utf-8", errors="replace")
                return Fresh(content=content, etag=new_etag)
            return Fresh(content=resp.text, etag=new_etag)
        return Fresh(content=resp.text, etag=new_etag)


class RetrievalClient:
    """Runs one round of retrieval: search fan-out plus README decoration.

    Args:
        github: Client for this round.
        store: ResultStore, for stored ETags and cached README content.
        readme_concurrency: Max README fetches in flight.
    """

    def __init__(self, github: GitHubClient, store, readme_concurrency: int = 8) -> None:
        self.github = github
        self.store = store
        self._semaphore = asyncio.Semaphore(max(1, readme_concurrency))
        self._readmes: dict[str, asyncio.Task] = {}

    async def retrieve(
        self,
        queries: list[str],
        per_query_limit: int,
        forced: Optional[list[GitHubRepository]] = None,
    ) -> RetrievalBatch:
        """Run all queries concurrently and return candidates in query order.

        Forced (session-bias) repositories are appended after the template
        queries, so template hits win dedupe ties. If any query fails, every
        search and README fetch still in flight is cancelled before the
        error propagates.
        """
        tasks = [asyncio.ensure_future(self._run_query(q, per_query_limit)) for q in queries]
        try:
            per_query = await asyncio.gather(*tasks)

            candidates: list[RetrievedCandidate] = []
            excluded = 0
            for query_candidates, query_excluded in per_query:
                candidates.extend(query_candidates)
                excluded += query_excluded

            if forced:
                bias_candidates, bias_excluded = await self._decorate(SESSION_BIAS_QUERY, forced)
                candidates.extend(bias_candidates)
                excluded += bias_excluded
        except BaseException:
            await self._cancel_pending(tasks)
            raise

        return RetrievalBatch(
            queries=list(queries),
            candidates=candidates,
            requests=self.github.requests,
            excluded_without_readme=excluded,
        )

    async def _cancel_pending(self, tasks: list[asyncio.Future]) -> None:
        outstanding = [*tasks, *self._readmes.values()]
        for task in outstanding:
            task.cancel()
        # Collect every outcome so sibling failures are not left unretrieved
        await asyncio.gather(*outstanding, return_exceptions=True)

    async def _run_query(self, query: str, limit: int) -> tuple[list[RetrievedCandidate], int]:
        repos = await self.github.search_repositories(query, limit)
        log.info("github_query_finished", query=query, hits=len(repos))
        return await self._decorate(query, repos)

    async def _decorate(
        self, query: str, repos: list[GitHubRepository]
    ) -> tuple[list[RetrievedCandidate], int]:
        if not repos:
            return [], 0
        etags = await self.store.get_etags_for_items([r.key for r in repos])
        lookups = await asyncio.gather(
            *(self._readme_once(repo, etags.get(repo.key)) for repo in repos)
        )

        candidates: list[RetrievedCandidate] = []
        excluded = 0
        for repo, (content, etag) in zip(repos, lookups):
            if content is None:
                excluded += 1
                log.info("repo_excluded_no_readme", full_name=repo.full_name, query=query)
                continue
            candidates.append(
                RetrievedCandidate(
                    repo=repo.model_copy(update={"etag": etag}),
                    readme=content,
                    source_query=query,
                )
            )
        return candidates, excluded

    def _readme_once(self, repo: GitHubRepository, etag: Optional[str]) -> asyncio.Task:
        # Several template queries often hit the same repository; fetch once per round
        task = self._readmes.get(repo.key)
        if task is None:
            task = asyncio.ensure_future(self._resolve_readme(repo, etag))
            self._readmes[repo.key] = task
        return task

    async def _resolve_readme(
        self, repo: GitHubRepository, etag: Optional[str]
    ) -> tuple[Optional[str], Optional[str]]:
        """Return (content, etag) for a repository; content None means excluded."""
        async with self._semaphore:
            lookup = await self.github.fetch_readme(repo.full_name, etag)

            if isinstance(lookup, NotModified):
                cached = await self.store.get_cached_content(repo.key)
                if cached is not None:
                    return cached, lookup.etag
                # Stored ETag without stored content: fetch unconditionally
                log.info("readme_cache_miss", full_name=repo.full_name)
                lookup = await self.github.fetch_readme(repo.full_name)

        if isinstance(lookup, Fresh):
            return lookup.content, lookup.etag
        return None, None
