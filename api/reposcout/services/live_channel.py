"""Live channel: ordered delivery of lifecycle events to one websocket.

LiveChannel owns a bounded outbound queue drained by a single sender task,
so events reach the client in the order they were published and a slow
client applies backpressure to the round instead of growing memory.

LiveChannelObserver adapts the search lifecycle's events to the channel.
Repository arrivals are coalesced into ``github_batch`` frames, judge
updates collapse to the latest snapshot, and any other event flushes both
first so per-session ordering holds.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import WebSocket
from pydantic import TypeAdapter

from reposcout.schemas.events import AttemptStarted, GithubBatch, JudgeUpdate, LiveEvent
from reposcout.schemas.github import RepoPreview
from reposcout.services.coalescer import EventCoalescer

log = structlog.get_logger(__name__)

OUTBOUND_QUEUE_SIZE = 256

_outbound = TypeAdapter(LiveEvent)


class LiveChannel:
    def __init__(self, websocket: WebSocket, maxsize: int = OUTBOUND_QUEUE_SIZE) -> None:
        self.websocket = websocket
        self._queue: asyncio.Queue[Optional[LiveEvent]] = asyncio.Queue(maxsize=maxsize)
        self._sender: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._sender is None:
            self._sender = asyncio.create_task(self._send_loop())

    @property
    def closed(self) -> bool:
        return self._sender is not None and self._sender.done()

    async def send(self, event: LiveEvent) -> None:
        if self.closed:
            log.debug("live_event_dropped", event_type=getattr(event, "type", None))
            return
        await self._queue.put(event)

    async def close(self) -> None:
        """Deliver what is queued, then stop the sender."""
        if self._sender is None:
            return
        if not self._sender.done():
            await self._queue.put(None)
            await asyncio.wait([self._sender])

    async def _send_loop(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await self.websocket.send_json(_outbound.dump_python(event, mode="json"))
            except (RuntimeError, OSError) as exc:
                log.warning("live_send_failed", error=str(exc))
                return


class LiveChannelObserver:
    """SearchObserver that streams lifecycle events to a LiveChannel."""

    def __init__(self, channel: LiveChannel, batch_size: int = 20, batch_interval: float = 0.3) -> None:
        self.channel = channel
        self._repos: EventCoalescer[tuple[int, RepoPreview]] = EventCoalescer(
            self._emit_repos, max_batch=batch_size, interval=batch_interval
        )
        self._judge: EventCoalescer[JudgeUpdate] = EventCoalescer(
            self._emit_judge, max_batch=1, interval=batch_interval
        )
        self.attempt_ids: set[int] = set()

    async def publish(self, event: LiveEvent) -> None:
        if isinstance(event, AttemptStarted):
            self.attempt_ids.add(event.attempt_id)
        if isinstance(event, GithubBatch) and event.repos:
            for repo in event.repos:
                await self._repos.add((event.attempt_id, repo))
        elif isinstance(event, JudgeUpdate):
            await self._repos.flush()
            await self._judge.add(event)
        else:
            await self.flush()
            await self.channel.send(event)

    async def flush(self) -> None:
        await self._repos.flush()
        await self._judge.flush()

    async def close(self) -> None:
        await self._repos.close()
        await self._judge.close()

    async def _emit_repos(self, batch: list[tuple[int, RepoPreview]]) -> None:
        # An attempt_started always flushes first, so a batch never spans attempts
        attempt_id = batch[0][0]
        await self.channel.send(
            GithubBatch(attempt_id=attempt_id, count=len(batch), repos=[repo for _, repo in batch])
        )

    async def _emit_judge(self, batch: list[JudgeUpdate]) -> None:
        await self.channel.send(batch[-1])
