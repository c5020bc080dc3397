"""Tests for ordered, coalesced delivery to a live channel."""

import asyncio

from pydantic import TypeAdapter

from reposcout.schemas.events import (
    AttemptStarted,
    ErrorEvent,
    Finalized,
    GithubBatch,
    JudgeUpdate,
    LiveEvent,
)
from reposcout.schemas.github import RepoPreview
from reposcout.schemas.judge import JudgeStats
from reposcout.services.live_channel import LiveChannel, LiveChannelObserver


class FakeWebSocket:
    def __init__(self, fail_after: int = -1):
        self.sent = []
        self.fail_after = fail_after

    async def send_json(self, data):
        if len(self.sent) == self.fail_after:
            raise RuntimeError("websocket is closed")
        self.sent.append(data)


def _preview(n: int) -> RepoPreview:
    return RepoPreview(full_name=f"owner/repo-{n}", html_url=f"https://github.com/owner/repo-{n}")


def _judge_update(median: float) -> JudgeUpdate:
    return JudgeUpdate(
        attempt_id=1,
        stats=JudgeStats(median=median, top5_mean=median),
        findings="ok",
        recommendations=["next"],
    )


async def test_channel_preserves_order():
    ws = FakeWebSocket()
    channel = LiveChannel(ws)
    channel.start()

    for n in range(5):
        await channel.send(ErrorEvent(code="c", message=str(n)))
    await channel.close()

    assert [m["message"] for m in ws.sent] == ["0", "1", "2", "3", "4"]


async def test_send_after_socket_failure_is_dropped():
    ws = FakeWebSocket(fail_after=1)
    channel = LiveChannel(ws, maxsize=2)
    channel.start()

    await channel.send(ErrorEvent(code="c", message="delivered"))
    await channel.send(ErrorEvent(code="c", message="fails"))
    await asyncio.sleep(0.01)
    assert channel.closed

    for n in range(10):
        await channel.send(ErrorEvent(code="c", message=f"dropped {n}"))
    await channel.close()

    assert [m["message"] for m in ws.sent] == ["delivered"]


async def test_observer_batches_repos_and_keeps_event_order():
    ws = FakeWebSocket()
    channel = LiveChannel(ws)
    channel.start()
    observer = LiveChannelObserver(channel, batch_size=2, batch_interval=5)

    await observer.publish(AttemptStarted(attempt_id=1, result_group=1, search_query="q", expanded_queries=["q"]))
    await observer.publish(GithubBatch(attempt_id=1, count=3, repos=[_preview(n) for n in range(3)]))
    await observer.publish(_judge_update(0.4))
    await observer.publish(Finalized(attempt_id=1, result_group=1, total=3, threshold=0.65, median=0.4))
    await observer.close()
    await channel.close()

    assert [m["type"] for m in ws.sent] == [
        "attempt_started", "github_batch", "github_batch", "judge_update", "finalized",
    ]
    assert [m["count"] for m in ws.sent if m["type"] == "github_batch"] == [2, 1]
    assert observer.attempt_ids == {1}


async def test_observer_flushes_pending_repos_on_close():
    ws = FakeWebSocket()
    channel = LiveChannel(ws)
    channel.start()
    observer = LiveChannelObserver(channel, batch_size=10, batch_interval=5)

    await observer.publish(GithubBatch(attempt_id=3, count=1, repos=[_preview(1)]))
    await observer.close()
    await channel.close()

    assert ws.sent == [{
        "type": "github_batch",
        "attempt_id": 3,
        "count": 1,
        "repos": [{"full_name": "owner/repo-1", "html_url": "https://github.com/owner/repo-1", "description": None}],
    }]


async def test_frames_parse_back_as_live_events():
    ws = FakeWebSocket()
    channel = LiveChannel(ws)
    channel.start()
    sent = [
        Finalized(attempt_id=2, result_group=2, total=4, threshold=0.65, median=0.7, final=True, outcome="converged"),
        ErrorEvent(code="retrieval_failed", message="GitHub API error 500"),
    ]

    for event in sent:
        await channel.send(event)
    await channel.close()

    parsed = [TypeAdapter(LiveEvent).validate_python(frame) for frame in ws.sent]
    assert parsed == sent
