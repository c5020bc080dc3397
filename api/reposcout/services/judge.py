"""Judge client: scores a bounded digest of candidates against the user's intent.

The judge is an OpenAI-compatible chat-completions endpoint called with
temperature 0 and JSON response format. Its answer is validated strictly;
anything that does not fit JudgeVerdict aborts the round rather than being
patched up.
"""

import json
import statistics
import time
from dataclasses import dataclass

import httpx
import structlog
from pydantic import ValidationError

from reposcout.errors import JudgeSchemaError, JudgeUnavailableError, excerpt
from reposcout.metrics import judge_duration
from reposcout.schemas.judge import (
    MAX_JUDGE_REPOS,
    README_EXCERPT_CHARS,
    JudgeRequest,
    JudgeRequestRepo,
    JudgeStats,
    JudgeVerdict,
)

log = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an expert evaluator tasked with reviewing GitHub repositories for "
    "suitability in fulfilling a user request about Cloudflare Workers. Return a "
    "JSON object with keys overall_findings, recommendations (boolean GitHub "
    "search queries), and per_repo (scored findings: full_name, score, note). "
    "Use rubric: 0.0 off-topic, 0.3 adjacent, 0.6 useful, 0.8 strong, 0.9+ excellent."
)

TOP_N = 5


@dataclass
class JudgeResult:
    verdict: JudgeVerdict
    prompt_tokens: int = 0
    completion_tokens: int = 0


def build_digest(natural_language_request: str, candidates: list) -> JudgeRequest:
    """Bound the candidate list to what the judge sees.

    At most MAX_JUDGE_REPOS candidates, README cut to README_EXCERPT_CHARS.
    """
    repos = []
    for c in candidates[:MAX_JUDGE_REPOS]:
        repos.append(
            JudgeRequestRepo(
                full_name=c.repo.full_name,
                html_url=c.repo.html_url,
                description=c.repo.description,
                stars=c.repo.stargazers_count,
                language=c.repo.language,
                topics=list(c.repo.topics),
                readme_excerpt=c.readme[:README_EXCERPT_CHARS] if c.readme else None,
            )
        )
    return JudgeRequest(natural_language_request=natural_language_request, repos=repos)


def compute_statistics(scores: list[float]) -> JudgeStats:
    """Median and mean of the top five scores; both 0 for no scores."""
    if not scores:
        return JudgeStats(median=0.0, top5_mean=0.0)
    ordered = sorted(scores)
    top = ordered[-TOP_N:]
    return JudgeStats(
        median=statistics.median(ordered),
        top5_mean=sum(top) / len(top),
    )


class JudgeClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        api_url: str = "https://api.openai.com/v1/chat/completions",
        model: str = "gpt-4o-mini",
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.api_url = api_url
        self.model = model

    async def judge(self, request: JudgeRequest) -> JudgeResult:
        """Submit the digest and return the validated verdict with token usage.

        Raises:
            JudgeUnavailableError: No API key, transport failure, or non-2xx.
            JudgeSchemaError: The response does not fit JudgeVerdict.
        """
        if not self.api_key:
            raise JudgeUnavailableError("Judge API key is not configured")

        body = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request.model_dump_json(indent=2)},
            ],
        }

        start = time.monotonic()
        try:
            resp = await self.client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise JudgeUnavailableError(f"Judge request failed: {type(exc).__name__}") from exc
        finally:
            judge_duration.observe(time.monotonic() - start)

        if not resp.is_success:
            raise JudgeUnavailableError(f"Judge API error {resp.status_code}: {excerpt(resp.text)}")

        try:
            payload = resp.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise JudgeSchemaError("Judge response has no message content") from exc
        if not content:
            raise JudgeSchemaError("Judge response has no message content")

        try:
            verdict = JudgeVerdict.model_validate(json.loads(content))
        except (ValueError, ValidationError) as exc:
            log.warning("judge_schema_invalid", error=excerpt(str(exc)))
            raise JudgeSchemaError(f"Judge response failed validation: {excerpt(str(exc))}") from exc

        # Blank entries are not usable as a next query
        recommendations = [r.strip() for r in verdict.recommendations if r.strip()]
        verdict = verdict.model_copy(update={"recommendations": recommendations})

        usage = payload.get("usage") or {}
        return JudgeResult(
            verdict=verdict,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        )
