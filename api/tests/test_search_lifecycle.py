"""Tests for the refinement loop: convergence, budget, aborts and cancellation."""

import pytest

from conftest import ScriptedJudge, make_candidate, make_verdict
from reposcout.config import Settings
from reposcout.errors import InvalidRequestError, JudgeSchemaError, SearchAborted
from reposcout.schemas.events import AttemptStarted
from reposcout.schemas.judge import JudgeStats
from reposcout.schemas.search import RetryPolicy, SearchRequest
from reposcout.services.search_lifecycle import (
    CancelToken,
    ConvergenceController,
    SearchOutcome,
    decide,
)

ALL = ("owner/repo-1", "owner/repo-2", "owner/repo-3")


def scores(value: float) -> dict[str, float]:
    return {name: value for name in ALL}


def _request(**overrides) -> SearchRequest:
    data = {
        "query": "hono starter",
        "base_keywords": False,
        "retry_policy": RetryPolicy(max_attempts=3, min_score=0.65),
    }
    data.update(overrides)
    return SearchRequest(**data)


def _controller(store, github_http, judge) -> ConvergenceController:
    return ConvergenceController(store, github_http, judge, config=Settings(readme_concurrency=4))


class RecordingObserver:
    def __init__(self, on_event=None):
        self.events = []
        self.on_event = on_event

    async def publish(self, event):
        self.events.append(event)
        if self.on_event:
            self.on_event(event)

    @property
    def types(self):
        return [e.type for e in self.events]


class TestDecide:
    def test_median_converges(self):
        assert decide(JudgeStats(median=0.65, top5_mean=0.65), ["q"], 1, 3, 0.65) == SearchOutcome.CONVERGED

    def test_top5_mean_converges(self):
        assert decide(JudgeStats(median=0.3, top5_mean=0.75), ["q"], 1, 3, 0.65) == SearchOutcome.CONVERGED

    def test_no_recommendations_stops(self):
        assert decide(JudgeStats(median=0.3, top5_mean=0.3), [], 1, 3, 0.65) == SearchOutcome.NO_RECOMMENDATIONS

    def test_budget_exhausted(self):
        assert decide(JudgeStats(median=0.3, top5_mean=0.3), ["q"], 3, 3, 0.65) == SearchOutcome.EXHAUSTED

    def test_refine_otherwise(self):
        assert decide(JudgeStats(median=0.3, top5_mean=0.3), ["q"], 2, 3, 0.65) is None


async def test_converges_on_second_round(store, fake_github, github_http):
    session = await store.create_session("cloudflare worker starter with hono")
    judge = ScriptedJudge(
        make_verdict(scores(0.3), ["hono wrangler template"]),
        make_verdict(scores(0.8), ["unused"]),
    )
    observer = RecordingObserver()

    result = await _controller(store, github_http, judge).run(
        session.id, _request(), session.natural_language_request, observer=observer
    )

    assert result.outcome == SearchOutcome.CONVERGED
    assert [a.result_group for a in result.attempts] == [1, 2]
    assert [a.query for a in result.attempts] == ["hono starter", "hono wrangler template"]
    assert [c.url.params["q"] for c in fake_github.search_calls] == ["hono starter", "hono wrangler template"]
    assert result.attempts[1].stats.median == pytest.approx(0.8)
    assert result.attempts[0].cost.judge_prompt_tokens == 100
    assert result.attempts[0].cost.github_requests == 4

    assert observer.types == [
        "attempt_started", "github_batch", "judge_update", "finalized", "refined_search",
        "attempt_started", "github_batch", "judge_update", "finalized",
    ]
    finals = [e for e in observer.events if e.type == "finalized"]
    assert [(f.final, f.outcome) for f in finals] == [(False, None), (True, "converged")]
    assert judge.requests[0].natural_language_request == "cloudflare worker starter with hono"

    items, _ = await store.list_results(session.id, attempt_id=result.attempts[1].attempt_id)
    assert {i.judge_relevance_score for i in items} == {0.8}
    attempts = await store.list_attempts(session.id)
    assert attempts[0].recommendations == ["unused"]
    assert all(a.latency_ms is not None for a in attempts)


async def test_stops_after_exactly_max_attempts(store, github_http):
    session = await store.create_session("anything")
    judge = ScriptedJudge(*[make_verdict(scores(0.2), [f"query {n}"]) for n in range(3)])

    result = await _controller(store, github_http, judge).run(session.id, _request(), "anything")

    assert result.outcome == SearchOutcome.EXHAUSTED
    assert len(result.attempts) == 3
    assert len(judge.requests) == 3
    assert await store.count_attempts(session.id) == 3


async def test_no_recommendations_ends_after_one_round(store, github_http):
    session = await store.create_session("anything")
    judge = ScriptedJudge(make_verdict(scores(0.2), []))

    result = await _controller(store, github_http, judge).run(session.id, _request(), "anything")

    assert result.outcome == SearchOutcome.NO_RECOMMENDATIONS
    assert len(result.attempts) == 1


async def test_judge_failure_aborts_with_completed_rounds(store, github_http):
    session = await store.create_session("anything")
    judge = ScriptedJudge(
        make_verdict(scores(0.2), ["second try"]),
        JudgeSchemaError("Judge response failed validation"),
    )

    with pytest.raises(SearchAborted) as exc_info:
        await _controller(store, github_http, judge).run(session.id, _request(), "anything")

    aborted = exc_info.value
    assert aborted.code == "judge_schema_invalid"
    assert aborted.status_code == 502
    assert [a.result_group for a in aborted.attempts] == [1]
    # The failed round's attempt and unscored results stay in the audit trail
    assert await store.count_attempts(session.id) == 2


async def test_retrieval_failure_aborts_before_persisting(store, fake_github, github_http):
    session = await store.create_session("anything")
    fake_github.search_status = 500

    with pytest.raises(SearchAborted) as exc_info:
        await _controller(store, github_http, ScriptedJudge()).run(session.id, _request(), "anything")

    assert exc_info.value.code == "retrieval_failed"
    assert exc_info.value.attempts == []
    assert await store.count_attempts(session.id) == 0


async def test_judge_unknown_names_are_ignored(store, github_http):
    session = await store.create_session("anything")
    judge = ScriptedJudge(make_verdict({"owner/repo-1": 0.9, "ghost/repo": 0.9}, ["x"]))

    result = await _controller(store, github_http, judge).run(session.id, _request(), "anything")

    items, _ = await store.list_results(session.id, attempt_id=result.attempts[0].attempt_id)
    by_name = {i.repo.full_name: i.judge_relevance_score for i in items}
    assert by_name == {"owner/repo-1": 0.9, "owner/repo-2": None, "owner/repo-3": None}


async def test_excluding_every_candidate_skips_the_judge(store, github_http):
    session = await store.create_session("anything")
    first = await _controller(store, github_http, ScriptedJudge(make_verdict(scores(0.9)))).run(
        session.id, _request(), "anything"
    )
    judge = ScriptedJudge()

    result = await _controller(store, github_http, judge).run(
        session.id, _request(exclude_attempt_ids=[first.attempts[0].attempt_id]), "anything"
    )

    assert result.outcome == SearchOutcome.NO_RECOMMENDATIONS
    assert result.attempts[0].total_repos == 0
    assert result.attempts[0].result_group == 2
    assert judge.requests == []


async def test_foreign_exclusion_is_rejected_before_any_round(store, github_http):
    mine = await store.create_session("mine")
    theirs = await store.create_session("theirs")
    other = await store.create_attempt(theirs.id, "q", ["q"], "h")
    judge = ScriptedJudge()

    with pytest.raises(InvalidRequestError):
        await _controller(store, github_http, judge).run(
            mine.id, _request(exclude_attempt_ids=[other.id]), "mine"
        )
    assert await store.count_attempts(mine.id) == 0


async def test_session_bias_items_are_judged(store, github_http):
    earlier = await store.create_session("earlier")
    attempt = await store.create_attempt(earlier.id, "q", ["q"], "h")
    seeded = make_candidate(7)
    await store.insert_items([seeded.repo])
    await store.insert_results(earlier.id, attempt.id, [seeded])

    session = await store.create_session("now")
    judge = ScriptedJudge(make_verdict(scores(0.9)))
    await _controller(store, github_http, judge).run(
        session.id, _request(search_within_sessions=[earlier.id]), "now"
    )

    assert [r.full_name for r in judge.requests[0].repos] == [*ALL, "owner/repo-7"]


async def test_cancel_before_judging_leaves_unscored_attempt(store, github_http):
    session = await store.create_session("anything")
    cancel = CancelToken()
    observer = RecordingObserver(
        on_event=lambda e: cancel.cancel() if isinstance(e, AttemptStarted) else None
    )
    judge = ScriptedJudge()

    result = await _controller(store, github_http, judge).run(
        session.id, _request(), "anything", observer=observer, cancel=cancel
    )

    assert result.outcome == SearchOutcome.CANCELLED
    assert result.attempts == []
    assert judge.requests == []
    assert await store.count_attempts(session.id) == 1
    items, _ = await store.list_results(session.id)
    assert all(i.judge_relevance_score is None for i in items)


async def test_cancel_before_start_runs_nothing(store, fake_github, github_http):
    session = await store.create_session("anything")
    cancel = CancelToken()
    cancel.cancel()

    result = await _controller(store, github_http, ScriptedJudge()).run(
        session.id, _request(), "anything", cancel=cancel
    )

    assert result.outcome == SearchOutcome.CANCELLED
    assert fake_github.search_calls == []
    assert await store.count_attempts(session.id) == 0


async def test_cancel_while_judging_stops_after_the_round(store, github_http):
    session = await store.create_session("anything")
    cancel = CancelToken()

    class CancellingJudge(ScriptedJudge):
        async def judge(self, request):
            cancel.cancel()
            return await super().judge(request)

    judge = CancellingJudge(make_verdict(scores(0.2), ["never run"]))
    observer = RecordingObserver()

    result = await _controller(store, github_http, judge).run(
        session.id, _request(), "anything", observer=observer, cancel=cancel
    )

    assert result.outcome == SearchOutcome.CANCELLED
    assert len(result.attempts) == 1
    assert "refined_search" not in observer.types
    assert observer.events[-1].outcome == "cancelled"
    items, _ = await store.list_results(session.id)
    assert {i.judge_relevance_score for i in items} == {0.2}
