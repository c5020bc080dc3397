"""Response formatters for MCP tool output.

Converts raw API JSON responses into clean, agent-readable strings.
MCP tools return strings (not dicts) so agents can read them directly.
"""

SNIPPET_CHARS = 200


def _snippet(text: str) -> str:
    text = text or ""
    return text[:SNIPPET_CHARS] + ("..." if len(text) > SNIPPET_CHARS else "")


def _score(value) -> str:
    return "unscored" if value is None else f"{value:.2f}"


def format_lifecycle(data: dict) -> str:
    """Format POST /sessions/{id}/search?wait=true into a readable string.

    Args:
        data: {"session_id": "...", "outcome": "...", "attempts": [...]}

    Returns:
        One block per round with its queries, stats and recommendations.
    """
    attempts = data.get("attempts", [])
    outcome = data.get("outcome", "unknown")
    lines = [
        f"Search for session {data.get('session_id', 'unknown')} finished: "
        f"{outcome} after {len(attempts)} round{'s' if len(attempts) != 1 else ''}.\n"
    ]

    for a in attempts:
        stats = a.get("stats") or {}
        cost = a.get("cost") or {}
        recs = a.get("recommendations") or []
        lines.append(
            f"Round {a.get('result_group', '?')} (attempt {a.get('attempt_id', '?')}): \"{a.get('query', '')}\"\n"
            f"   Repos judged: {a.get('total_repos', 0)} | "
            f"median: {stats.get('median', 0.0):.2f} | top-5 mean: {stats.get('top5_mean', 0.0):.2f}\n"
            f"   Findings: {_snippet(a.get('judge_findings', ''))}\n"
            f"   Recommendations: {'; '.join(recs) if recs else '(none)'}\n"
            f"   Cost: {cost.get('latency_ms', 0)}ms, {cost.get('github_requests', 0)} GitHub requests, "
            f"{cost.get('judge_prompt_tokens', 0) + cost.get('judge_completion_tokens', 0)} judge tokens\n"
        )

    return "\n".join(lines)


def format_sessions(data: dict) -> str:
    """Format GET /sessions into a readable string."""
    items = data.get("items", [])
    if not items:
        return "No search sessions found."

    lines = [f"{len(items)} session{'s' if len(items) != 1 else ''}:\n"]
    for s in items:
        lines.append(
            f"- {s.get('id', 'unknown')} ({s.get('created_at', '')})\n"
            f"   {_snippet(s.get('natural_language_request', ''))}"
        )
    if data.get("next_cursor"):
        lines.append(f"\nMore sessions available (cursor: {data['next_cursor']})")
    return "\n".join(lines)


def format_attempts(data: dict) -> str:
    """Format GET /sessions/{id}/attempts into a readable string."""
    attempts = data.get("attempts", [])
    if not attempts:
        return "This session has no search attempts yet."

    lines = []
    for a in attempts:
        recs = a.get("recommendations") or []
        latency = a.get("latency_ms")
        lines.append(
            f"Attempt {a.get('attempt_id', '?')} (round {a.get('result_group', '?')}): "
            f"\"{a.get('search_query', '')}\"\n"
            f"   Expanded: {', '.join(a.get('expanded_queries') or []) or '(none)'}\n"
            f"   Judge: {_snippet(a.get('judge_summary') or 'not judged')}\n"
            f"   Recommendations: {'; '.join(recs) if recs else '(none)'}\n"
            f"   Latency: {'n/a' if latency is None else f'{latency}ms'}\n"
        )
    return "\n".join(lines)


def format_results(data: dict) -> str:
    """Format GET /sessions/{id}/results into a readable string.

    Args:
        data: {"items": [...], "next_cursor": "..."}

    Returns:
        Numbered repositories with score and judge note, or a "no results" message.
    """
    items = data.get("items", [])
    if not items:
        return "No repositories match these filters."

    lines = [f"{len(items)} repositor{'ies' if len(items) != 1 else 'y'}:\n"]
    for i, r in enumerate(items, start=1):
        repo = r.get("repo") or {}
        stars = repo.get("stars")
        lines.append(
            f"{i}. {repo.get('full_name', r.get('repo_id', 'unknown'))} "
            f"(score: {_score(r.get('judge_relevance_score'))}, "
            f"stars: {stars if stars is not None else '?'}, "
            f"language: {repo.get('language') or 'unknown'})\n"
            f"   {r.get('repo_url', '')}\n"
            f"   Judge: {_snippet(r.get('judge_finding') or 'no note')}\n"
            f"   Attempt: {r.get('search_attempt_id', '?')}\n"
        )
    if data.get("next_cursor"):
        lines.append(f"More results available (cursor: {data['next_cursor']})")
    return "\n".join(lines)


def format_error(status_code: int, detail: str) -> str:
    """Format an HTTP error into a readable string for agents.

    Args:
        status_code: HTTP status code
        detail: Error detail message from the API

    Returns:
        Readable error string that does not crash the MCP session.
    """
    return f"[RepoScout error] {detail} (HTTP {status_code})"
