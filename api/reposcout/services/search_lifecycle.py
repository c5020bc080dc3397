"""Search lifecycle: the expand -> retrieve -> judge -> decide loop.

One lifecycle runs up to ``retry_policy.max_attempts`` rounds for a session.
Each round expands the current query, retrieves and dedupes candidates,
persists the attempt with unscored results, asks the judge, writes the scores
back, and then decides:

  - converged: median >= min_score, or top-5 mean >= TOP5_CONVERGENCE
  - no recommendations: the judge offered no follow-up query
  - exhausted: the round budget is spent
  - otherwise: the judge's first recommendation becomes the next query

Rounds are strictly sequential. A provider, judge or store failure aborts the
lifecycle with SearchAborted, carrying the rounds that did complete.

Cancellation is cooperative: the CancelToken is checked between states, and
HTTP calls already in flight run to completion.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

import httpx
import structlog

from reposcout.config import Settings, settings
from reposcout.errors import ScoutError, SearchAborted
from reposcout.metrics import round_duration, search_lifecycles, search_rounds
from reposcout.schemas.events import (
    AttemptStarted,
    Finalized,
    GithubBatch,
    JudgeUpdate,
    LiveEvent,
    RefinedSearch,
)
from reposcout.schemas.github import RepoPreview
from reposcout.schemas.judge import JudgeStats
from reposcout.schemas.search import (
    AttemptSummary,
    RoundCost,
    SearchLifecycleResponse,
    SearchRequest,
)
from reposcout.services.dedupe import (
    collect_excluded_keys,
    collect_session_bias_items,
    dedupe_candidates,
    exclude_items,
)
from reposcout.services.github import GitHubClient, RetrievalClient
from reposcout.services.judge import JudgeClient, build_digest, compute_statistics
from reposcout.services.query_expansion import build_search_queries, query_hash

log = structlog.get_logger(__name__)

TOP5_CONVERGENCE = 0.75


class RoundState(str, Enum):
    EXPANDING = "expanding"
    RETRIEVING = "retrieving"
    DEDUPLICATING = "deduplicating"
    JUDGING = "judging"


class SearchOutcome(str, Enum):
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    NO_RECOMMENDATIONS = "no_recommendations"
    CANCELLED = "cancelled"


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class SearchObserver(Protocol):
    async def publish(self, event: LiveEvent) -> None:
        ...


class NullObserver:
    async def publish(self, event) -> None:
        return None


class _Cancelled(Exception):
    """Raised at a state boundary once the CancelToken is set."""

    def __init__(self, state: RoundState):
        super().__init__(state.value)
        self.state = state


@dataclass
class SearchLifecycleResult:
    session_id: str
    outcome: SearchOutcome
    attempts: list[AttemptSummary] = field(default_factory=list)

    def to_response(self) -> SearchLifecycleResponse:
        return SearchLifecycleResponse(
            session_id=self.session_id,
            outcome=self.outcome.value,
            attempts=self.attempts,
        )


def decide(stats: JudgeStats, recommendations: list[str], round_no: int, max_attempts: int,
           min_score: float) -> Optional[SearchOutcome]:
    """Terminal outcome for a finished round, or None to refine."""
    if stats.median >= min_score or stats.top5_mean >= TOP5_CONVERGENCE:
        return SearchOutcome.CONVERGED
    if not recommendations:
        return SearchOutcome.NO_RECOMMENDATIONS
    if round_no >= max_attempts:
        return SearchOutcome.EXHAUSTED
    return None


class ConvergenceController:
    """Drives the rounds of one search lifecycle.

    Args:
        store: ResultStore.
        github_http: Shared httpx client for the GitHub API.
        judge: JudgeClient.
        config: Settings providing provider credentials and version tags.
    """

    def __init__(
        self,
        store,
        github_http: httpx.AsyncClient,
        judge: JudgeClient,
        config: Settings = settings,
    ) -> None:
        self.store = store
        self.github_http = github_http
        self.judge = judge
        self.config = config

    async def run(
        self,
        session_id: str,
        request: SearchRequest,
        natural_language_request: str,
        observer: Optional[SearchObserver] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SearchLifecycleResult:
        """Run rounds until a terminal outcome.

        Raises:
            InvalidRequestError: exclude_attempt_ids names another session's attempt.
            SearchAborted: A round failed; ``attempts`` holds the completed rounds.
        """
        observer = observer or NullObserver()
        cancel = cancel or CancelToken()
        policy = request.retry_policy
        blog = log.bind(session_id=session_id)

        excluded = await collect_excluded_keys(self.store, session_id, request.exclude_attempt_ids)
        forced = await collect_session_bias_items(self.store, request.search_within_sessions)

        blog.info(
            "search_lifecycle_started",
            query=request.query,
            max_attempts=policy.max_attempts,
            min_score=policy.min_score,
            excluded=len(excluded),
            forced=len(forced),
        )

        attempts: list[AttemptSummary] = []
        query = request.query
        outcome = SearchOutcome.EXHAUSTED

        for round_no in range(1, policy.max_attempts + 1):
            try:
                summary = await self._run_round(
                    session_id, query, request, natural_language_request,
                    excluded, forced, observer, cancel,
                )
            except _Cancelled as exc:
                blog.info("search_cancelled", round_no=round_no, state=exc.state.value)
                outcome = SearchOutcome.CANCELLED
                break
            except ScoutError as exc:
                search_rounds.labels(status=exc.code).inc()
                search_lifecycles.labels(outcome="aborted").inc()
                blog.error("search_round_failed", round_no=round_no, code=exc.code, error=exc.message)
                raise SearchAborted(exc, attempts) from exc

            search_rounds.labels(status="ok").inc()
            attempts.append(summary)

            decision = decide(
                summary.stats, summary.recommendations, round_no,
                policy.max_attempts, policy.min_score,
            )
            if decision is None and cancel.cancelled:
                decision = SearchOutcome.CANCELLED

            await observer.publish(Finalized(
                attempt_id=summary.attempt_id,
                result_group=summary.result_group,
                total=summary.total_repos,
                threshold=policy.min_score,
                median=summary.stats.median,
                final=decision is not None,
                outcome=decision.value if decision else None,
            ))

            if decision is not None:
                outcome = decision
                break

            next_query = summary.recommendations[0]
            await observer.publish(RefinedSearch(previous_query=query, new_query=next_query))
            blog.info(
                "refined_search",
                previous_query=query,
                new_query=next_query,
                reason="low_score",
                median_score=summary.stats.median,
                top5_mean_score=summary.stats.top5_mean,
            )
            query = next_query

        search_lifecycles.labels(outcome=outcome.value).inc()
        blog.info("search_lifecycle_finished", outcome=outcome.value, rounds=len(attempts))
        return SearchLifecycleResult(session_id=session_id, outcome=outcome, attempts=attempts)

    @staticmethod
    def _checkpoint(cancel: CancelToken, state: RoundState) -> None:
        if cancel.cancelled:
            raise _Cancelled(state)

    async def _run_round(
        self,
        session_id: str,
        query: str,
        request: SearchRequest,
        natural_language_request: str,
        excluded: set[str],
        forced: list,
        observer: SearchObserver,
        cancel: CancelToken,
    ) -> AttemptSummary:
        start = time.monotonic()

        self._checkpoint(cancel, RoundState.EXPANDING)
        queries = build_search_queries(query, request.base_keywords)
        per_query_limit = max(1, request.max_results // len(queries))

        self._checkpoint(cancel, RoundState.RETRIEVING)
        github = GitHubClient(self.github_http, self.config.github_token, self.config.github_api_url)
        retrieval = RetrievalClient(github, self.store, self.config.readme_concurrency)
        batch = await retrieval.retrieve(queries, per_query_limit, forced)

        self._checkpoint(cancel, RoundState.DEDUPLICATING)
        candidates = exclude_items(dedupe_candidates(batch.candidates), excluded)

        attempt = await self.store.create_attempt(
            session_id=session_id,
            search_query=query,
            expanded_queries=queries,
            query_hash=query_hash(queries),
            judge_model=self.config.judge_model,
            judge_model_version=self.config.judge_model_version,
            search_strategy_version=self.config.search_strategy_version,
        )
        await self.store.insert_items([c.repo for c in candidates])
        await self.store.insert_results(session_id, attempt.id, candidates)

        await observer.publish(AttemptStarted(
            attempt_id=attempt.id,
            result_group=attempt.result_group,
            search_query=query,
            expanded_queries=queries,
        ))
        await observer.publish(GithubBatch(
            attempt_id=attempt.id,
            count=len(candidates),
            repos=[
                RepoPreview(full_name=c.repo.full_name, html_url=c.repo.html_url,
                            description=c.repo.description)
                for c in candidates
            ],
        ))

        self._checkpoint(cancel, RoundState.JUDGING)
        prompt_tokens = completion_tokens = 0
        if candidates:
            digest = build_digest(natural_language_request, candidates)
            result = await self.judge.judge(digest)
            verdict = result.verdict
            prompt_tokens, completion_tokens = result.prompt_tokens, result.completion_tokens
            findings, recommendations, per_repo = (
                verdict.overall_findings, verdict.recommendations, verdict.per_repo,
            )
            stats = compute_statistics([v.score for v in per_repo])

            await self.store.upsert_judge_review(session_id, attempt.id, findings, recommendations)
            await self.store.update_result_scores(attempt.id, self._map_scores(candidates, per_repo))
        else:
            # Nothing left to judge; the round ends without a follow-up query
            log.info("judge_skipped_no_candidates", session_id=session_id, attempt_id=attempt.id)
            findings, recommendations, per_repo = "No candidate repositories to review.", [], []
            stats = compute_statistics([])
            await self.store.upsert_judge_review(session_id, attempt.id, findings, recommendations)

        await observer.publish(JudgeUpdate(
            attempt_id=attempt.id,
            stats=stats,
            findings=findings,
            recommendations=recommendations,
            per_repo=per_repo,
        ))

        elapsed = time.monotonic() - start
        round_duration.observe(elapsed)
        cost = RoundCost(
            latency_ms=int(elapsed * 1000),
            judge_prompt_tokens=prompt_tokens,
            judge_completion_tokens=completion_tokens,
            github_requests=batch.requests,
        )
        await self.store.record_attempt_cost(attempt.id, **cost.model_dump())

        log.info(
            "search_round_finished",
            session_id=session_id,
            attempt_id=attempt.id,
            result_group=attempt.result_group,
            latency_ms=cost.latency_ms,
            total_repos=len(candidates),
            excluded_without_readme=batch.excluded_without_readme,
            median_score=stats.median,
        )

        return AttemptSummary(
            attempt_id=attempt.id,
            result_group=attempt.result_group,
            query=query,
            expanded_queries=queries,
            judge_findings=findings,
            recommendations=recommendations,
            stats=stats,
            total_repos=len(candidates),
            cost=cost,
        )

    @staticmethod
    def _map_scores(candidates: list, per_repo: list) -> list[tuple[str, float, str]]:
        """Map judge verdicts back to repository keys by full name."""
        by_name = {c.repo.full_name: c.repo.key for c in candidates}
        scores = []
        for verdict in per_repo:
            key = by_name.get(verdict.full_name)
            if key is None:
                log.warning("judge_unknown_repo", full_name=verdict.full_name)
                continue
            scores.append((key, verdict.score, verdict.note))
        return scores
