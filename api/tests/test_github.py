"""Tests for GitHub search, README decoration and conditional fetches."""

import asyncio

import httpx
import pytest

from conftest import make_repo, raw_repo
from reposcout.errors import RetrievalError
from reposcout.services.github import (
    SESSION_BIAS_QUERY,
    Fresh,
    GitHubClient,
    Missing,
    NotModified,
    RetrievalClient,
)


class MemoryCache:
    """Just the store surface RetrievalClient reads."""

    def __init__(self, etags=None, contents=None):
        self.etags = etags or {}
        self.contents = contents or {}

    async def get_etags_for_items(self, keys):
        return {k: self.etags[k] for k in keys if k in self.etags}

    async def get_cached_content(self, key):
        return self.contents.get(key)


async def test_search_sends_star_sort_and_auth(fake_github, github_http):
    client = GitHubClient(github_http, token="ghp_test")

    repos = await client.search_repositories("wrangler", limit=10)

    assert [r.full_name for r in repos] == ["owner/repo-1", "owner/repo-2", "owner/repo-3"]
    request = fake_github.search_calls[0]
    assert request.url.params["sort"] == "stars"
    assert request.url.params["order"] == "desc"
    assert request.headers["Authorization"] == "Bearer ghp_test"
    assert client.requests == 1


async def test_search_paginates_until_limit(fake_github, github_http):
    fake_github.results["many"] = [raw_repo(n) for n in range(1, 251)]
    client = GitHubClient(github_http)

    repos = await client.search_repositories("many", limit=150)

    assert len(repos) == 150
    assert [int(c.url.params["page"]) for c in fake_github.search_calls] == [1, 2]


async def test_search_drops_malformed_items(fake_github, github_http):
    fake_github.results["mixed"] = [raw_repo(1), {"full_name": "no/node-id"}, raw_repo(2)]
    client = GitHubClient(github_http)

    repos = await client.search_repositories("mixed", limit=10)

    assert [r.node_id for r in repos] == ["R_node1", "R_node2"]


async def test_search_error_status_raises(fake_github, github_http):
    fake_github.search_status = 403
    client = GitHubClient(github_http)

    with pytest.raises(RetrievalError) as exc_info:
        await client.search_repositories("anything", limit=5)
    assert exc_info.value.status == 403
    assert "rate limit" in exc_info.value.message


async def test_transport_failure_raises_retrieval_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(RetrievalError) as exc_info:
            await GitHubClient(http).search_repositories("anything", limit=5)
    assert exc_info.value.status == 0


async def test_fetch_readme_outcomes(fake_github, github_http):
    fake_github.readmes["owner/none"] = None
    client = GitHubClient(github_http)

    fresh = await client.fetch_readme("owner/repo-1")
    assert isinstance(fresh, Fresh)
    assert "wrangler" in fresh.content
    assert fresh.etag == '"etag-owner/repo-1"'

    assert await client.fetch_readme("owner/repo-1", etag=fresh.etag) == NotModified(etag=fresh.etag)
    assert await client.fetch_readme("owner/none") == Missing()


async def test_fetch_readme_decodes_json_body():
    def handler(request):
        return httpx.Response(200, json={"content": "IyBIZWxsbw==", "encoding": "base64"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        lookup = await GitHubClient(http).fetch_readme("owner/repo")
    assert lookup == Fresh(content="# Hello", etag=None)


async def test_fetch_readme_server_error_raises(fake_github, github_http):
    fake_github.readme_status["owner/repo-1"] = 500

    with pytest.raises(RetrievalError):
        await GitHubClient(github_http).fetch_readme("owner/repo-1")


async def test_retrieve_excludes_repos_without_readme(fake_github, github_http):
    fake_github.readmes["owner/repo-2"] = None
    retrieval = RetrievalClient(GitHubClient(github_http), MemoryCache())

    batch = await retrieval.retrieve(["q"], per_query_limit=10)

    assert [c.repo.full_name for c in batch.candidates] == ["owner/repo-1", "owner/repo-3"]
    assert batch.excluded_without_readme == 1
    assert batch.candidates[0].repo.etag == '"etag-owner/repo-1"'


async def test_retrieve_reuses_cached_readme_on_304(fake_github, github_http):
    cache = MemoryCache(
        etags={"R_node1": '"etag-owner/repo-1"'},
        contents={"R_node1": "cached readme"},
    )
    retrieval = RetrievalClient(GitHubClient(github_http), cache)

    batch = await retrieval.retrieve(["q"], per_query_limit=1)

    [candidate] = batch.candidates
    assert candidate.readme == "cached readme"
    assert candidate.repo.etag == '"etag-owner/repo-1"'
    assert fake_github.readme_calls[0].headers["If-None-Match"] == '"etag-owner/repo-1"'


async def test_retrieve_refetches_when_304_has_no_cached_content(fake_github, github_http):
    cache = MemoryCache(etags={"R_node1": '"etag-owner/repo-1"'})
    retrieval = RetrievalClient(GitHubClient(github_http), cache)

    batch = await retrieval.retrieve(["q"], per_query_limit=1)

    [candidate] = batch.candidates
    assert candidate.readme.startswith("# owner/repo-1")
    assert len(fake_github.readme_calls) == 2
    assert "If-None-Match" not in fake_github.readme_calls[1].headers


async def test_retrieve_fetches_each_readme_once_per_round(fake_github, github_http):
    fake_github.results["a"] = [raw_repo(1), raw_repo(2)]
    fake_github.results["b"] = [raw_repo(2), raw_repo(3)]
    github = GitHubClient(github_http)
    retrieval = RetrievalClient(github, MemoryCache())

    batch = await retrieval.retrieve(["a", "b"], per_query_limit=5)

    assert [c.source_query for c in batch.candidates] == ["a", "a", "b", "b"]
    assert len(fake_github.readme_calls) == 3
    assert batch.requests == 2 + 3


async def test_retrieve_appends_forced_items_last(fake_github, github_http):
    fake_github.results["q"] = [raw_repo(1)]
    retrieval = RetrievalClient(GitHubClient(github_http), MemoryCache())

    batch = await retrieval.retrieve(["q"], per_query_limit=5, forced=[make_repo(7)])

    assert [(c.repo.full_name, c.source_query) for c in batch.candidates] == [
        ("owner/repo-1", "q"),
        ("owner/repo-7", SESSION_BIAS_QUERY),
    ]


async def test_failed_query_cancels_the_rest_of_the_round(fake_github):
    completed = []

    async def handler(request):
        if request.url.path == "/search/repositories" and request.url.params["q"].startswith("hono"):
            await asyncio.sleep(0.01)
            return httpx.Response(500, text="boom")
        if request.url.path.endswith("/readme"):
            await asyncio.sleep(0.05)
            completed.append(request.url.path)
        return fake_github.handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retrieval = RetrievalClient(GitHubClient(http), MemoryCache())

        with pytest.raises(RetrievalError) as exc_info:
            await retrieval.retrieve(["plain", "hono x"], per_query_limit=5)
        await asyncio.sleep(0.1)

    assert exc_info.value.status == 500
    assert completed == []
    assert all(task.done() for task in retrieval._readmes.values())
