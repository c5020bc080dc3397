"""Time- and size-bounded event batching.

Events are buffered and handed to ``emit`` in batches: as soon as
``max_batch`` events are waiting, or ``interval`` seconds after the first
buffered event, whichever comes first. Concurrent flushes join the one
already running, and an empty buffer is never emitted.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class EventCoalescer(Generic[T]):
    def __init__(
        self,
        emit: Callable[[list[T]], Awaitable[None]],
        max_batch: int = 20,
        interval: float = 0.3,
    ) -> None:
        if max_batch < 1:
            raise ValueError("max_batch must be >= 1")
        self._emit = emit
        self.max_batch = max_batch
        self.interval = interval
        self._buffer: list[T] = []
        self._timer: Optional[asyncio.Task] = None
        self._draining: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def add(self, event: T) -> None:
        self._buffer.append(event)
        if len(self._buffer) >= self.max_batch:
            await self.flush()
        elif self._timer is None:
            self._timer = asyncio.create_task(self._flush_after_interval())

    async def flush(self) -> None:
        """Emit everything buffered; joins a flush already in progress."""
        if self._draining is None or self._draining.done():
            if not self._buffer:
                self._cancel_timer()
                return
            self._draining = asyncio.create_task(self._drain())
        await asyncio.shield(self._draining)

    async def close(self) -> None:
        await self.flush()
        self._cancel_timer()

    async def _flush_after_interval(self) -> None:
        await asyncio.sleep(self.interval)
        self._timer = None
        await self.flush()

    async def _drain(self) -> None:
        self._cancel_timer()
        while self._buffer:
            batch = self._buffer[:self.max_batch]
            del self._buffer[:self.max_batch]
            await self._emit(batch)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
