"""RepoScout MCP server.

Exposes the search pipeline to MCP clients as a thin protocol adapter over
the RepoScout FastAPI backend. Each tool translates an MCP call into an
authenticated HTTP request and formats the response for agent consumption.

All backend failures return human-readable degradation strings, never
unhandled exceptions, so agent sessions can always continue.

Tools:
    run_search     -- POST /api/v1/sessions/{id}/search?wait=true  (long SLA)
    list_sessions  -- GET  /api/v1/sessions                        (read)
    list_attempts  -- GET  /api/v1/sessions/{id}/attempts          (read)
    list_results   -- GET  /api/v1/sessions/{id}/results           (read)
"""

from typing import Optional

import httpx
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentHeaders, Depends
from starlette.responses import JSONResponse

from reposcout_mcp.backend_client import BackendUnavailableError, CircuitOpenError, backend
from reposcout_mcp.config import settings
from reposcout_mcp.formatters import (
    format_attempts,
    format_error,
    format_lifecycle,
    format_results,
    format_sessions,
)

mcp = FastMCP(
    name="RepoScout",
    instructions=(
        "RepoScout finds GitHub repositories that match a natural language need. "
        "Use run_search to search GitHub and have the judge score the candidates; "
        "it refines the query over a few rounds until the results converge. "
        "Use list_sessions to find existing search sessions, list_attempts to see "
        "the rounds a session ran, and list_results to browse judged repositories."
    ),
)


def _extract_api_token(headers: dict) -> str:
    """Extract the bearer token from MCP client headers, fall back to env var for stdio."""
    auth = headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return settings.reposcout_api_token


def _error_body(exc: httpx.HTTPStatusError) -> dict:
    try:
        body = exc.response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _degrade(exc: Exception) -> str:
    if isinstance(exc, CircuitOpenError):
        return (
            "[RepoScout unavailable] The search backend is temporarily unreachable. "
            "Continuing without repository search. You can retry later."
        )
    if isinstance(exc, BackendUnavailableError):
        return (
            "[RepoScout timeout] Request took too long and was cancelled. "
            "The search backend may be under heavy load. Continuing without results."
        )
    if isinstance(exc, httpx.HTTPStatusError):
        detail = _error_body(exc).get("message") or str(exc)
        return format_error(exc.response.status_code, detail)
    return f"[RepoScout error] Unexpected error: {exc}. Continuing without results."


@mcp.tool(annotations={"readOnlyHint": False, "openWorldHint": True})
async def run_search(
    session_id: str,
    query: str = "",
    base_keywords: bool = True,
    max_results: int = 30,
    search_within_sessions: list[str] = [],
    max_attempts: int = 3,
    min_score: float = 0.65,
    headers: dict = Depends(CurrentHeaders()),
) -> str:
    """Search GitHub for repositories and let the judge refine the query until results converge.

    Args:
        session_id: Existing search session to run in
        query: First-round GitHub query (defaults to the session's request)
        base_keywords: Expand the query with star and recency variants
        max_results: Repositories retrieved per round (1-100)
        search_within_sessions: Also judge repositories found by these sessions
        max_attempts: Maximum refinement rounds (1-5)
        min_score: Median relevance that counts as converged (0-1)
    """
    api_token = _extract_api_token(headers)

    try:
        if not query:
            session = await backend.get(
                f"/api/v1/sessions/{session_id}",
                api_token=api_token,
                timeout=settings.read_timeout,
            )
            query = session["session"]["natural_language_request"]

        result = await backend.post(
            f"/api/v1/sessions/{session_id}/search",
            json={
                "query": query,
                "base_keywords": base_keywords,
                "max_results": max_results,
                "search_within_sessions": search_within_sessions,
                "retry_policy": {"max_attempts": max_attempts, "min_score": min_score},
            },
            params={"wait": "true"},
            api_token=api_token,
            timeout=settings.search_timeout,
        )
        return format_lifecycle(result)
    except httpx.HTTPStatusError as exc:
        body = _error_body(exc)
        message = _degrade(exc)
        if body.get("attempts"):
            # Rounds finished before the failure are still worth reporting
            partial = format_lifecycle(
                {"session_id": session_id, "outcome": body.get("code", "aborted"), "attempts": body["attempts"]}
            )
            return f"{message}\n\n{partial}"
        return message
    except Exception as exc:
        return _degrade(exc)


@mcp.tool(annotations={"readOnlyHint": True})
async def list_sessions(
    limit: int = 20,
    cursor: Optional[str] = None,
    headers: dict = Depends(CurrentHeaders()),
) -> str:
    """List RepoScout search sessions, newest first.

    Args:
        limit: Maximum sessions to return (1-100)
        cursor: Cursor from a previous call to fetch the next page
    """
    try:
        result = await backend.get(
            "/api/v1/sessions",
            api_token=_extract_api_token(headers),
            params={"limit": limit, "cursor": cursor},
            timeout=settings.read_timeout,
        )
        return format_sessions(result)
    except Exception as exc:
        return _degrade(exc)


@mcp.tool(annotations={"readOnlyHint": True})
async def list_attempts(
    session_id: str,
    headers: dict = Depends(CurrentHeaders()),
) -> str:
    """List the search rounds a session has run, newest first.

    Args:
        session_id: Search session to inspect
    """
    try:
        result = await backend.get(
            f"/api/v1/sessions/{session_id}/attempts",
            api_token=_extract_api_token(headers),
            timeout=settings.read_timeout,
        )
        return format_attempts(result)
    except Exception as exc:
        return _degrade(exc)


@mcp.tool(annotations={"readOnlyHint": True})
async def list_results(
    session_id: str,
    attempt_id: Optional[int] = None,
    min_score: Optional[float] = None,
    q: Optional[str] = None,
    dedupe: bool = True,
    sort: str = "score_desc",
    limit: int = 20,
    cursor: Optional[str] = None,
    headers: dict = Depends(CurrentHeaders()),
) -> str:
    """Browse judged repositories for a session.

    Args:
        session_id: Search session to browse
        attempt_id: Only results from this attempt
        min_score: Minimum judge relevance score (0-1)
        q: Text filter on repository name and description
        dedupe: Show each repository once across attempts
        sort: score_desc, stars_desc or time_desc
        limit: Maximum results (1-100)
        cursor: Cursor from a previous call to fetch the next page
    """
    try:
        result = await backend.get(
            f"/api/v1/sessions/{session_id}/results",
            api_token=_extract_api_token(headers),
            params={
                "attempt_id": attempt_id,
                "min_score": min_score,
                "q": q,
                "dedupe": str(dedupe).lower(),
                "sort": sort,
                "limit": limit,
                "cursor": cursor,
            },
            timeout=settings.read_timeout,
        )
        return format_results(result)
    except Exception as exc:
        return _degrade(exc)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request):
    """Health endpoint for Docker Compose healthchecks (HTTP transport only)."""
    return JSONResponse({"status": "healthy", "service": "reposcout-mcp"})
