"""Durable token-bucket actors for search triggers.

Each client id gets one BucketActor. Its state (token count and the time of
the next refill alarm) lives in BucketStorage, Redis in production, so the
limit survives restarts. All reads and writes of an actor's state happen
inside one turn under the actor's lock.

The lock and the alarm timers are per process, so the API must run as a
single worker for the limit to hold. Several workers sharing the same keys
would each fire alarms and overwrite each other's token counts.

Refill is alarm driven rather than computed on read: while the bucket is
below capacity an alarm is pending, and each alarm adds ``refill_increment``
tokens and re-arms itself until the bucket is full again.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis
import structlog

log = structlog.get_logger(__name__)

BUCKET_KEY = "reposcout:bucket:{}"
# Idle buckets expire from Redis after a day
BUCKET_TTL_SECONDS = 86400
# Smallest wait reported to a rejected caller
MIN_WAIT = 0.001


@dataclass
class BucketState:
    tokens: int
    alarm_at: Optional[float] = None


class BucketStorage(Protocol):
    async def load(self, client_id: str) -> Optional[BucketState]:
        ...

    async def save(self, client_id: str, state: BucketState) -> None:
        ...


class RedisBucketStorage:
    """Bucket state as a Redis hash with ``tokens`` and ``alarm_at`` fields."""

    def __init__(self, redis: aioredis.Redis, ttl: int = BUCKET_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl = ttl

    async def load(self, client_id: str) -> Optional[BucketState]:
        data = await self.redis.hgetall(BUCKET_KEY.format(client_id))
        if not data:
            return None
        alarm_at = data.get("alarm_at")
        return BucketState(
            tokens=int(data["tokens"]),
            alarm_at=float(alarm_at) if alarm_at else None,
        )

    async def save(self, client_id: str, state: BucketState) -> None:
        key = BUCKET_KEY.format(client_id)
        pipe = self.redis.pipeline()
        pipe.hset(key, mapping={
            "tokens": state.tokens,
            "alarm_at": "" if state.alarm_at is None else repr(state.alarm_at),
        })
        pipe.expire(key, self.ttl)
        await pipe.execute()


class BucketActor:
    def __init__(
        self,
        client_id: str,
        registry: "BucketActorRegistry",
    ) -> None:
        self.client_id = client_id
        self.registry = registry
        self.lock = asyncio.Lock()

    async def consume(self) -> float:
        """Take one token.

        Returns:
            0 when admitted, otherwise the seconds until the next refill.
        """
        reg = self.registry
        async with self.lock:
            state = await reg.storage.load(self.client_id)
            now = reg.clock()
            if state is None:
                state = BucketState(tokens=reg.capacity)
            if state.alarm_at is None:
                state.alarm_at = now + reg.refill_interval
                reg.schedule(self.client_id, state.alarm_at)

            if state.tokens > 0:
                state.tokens -= 1
                wait = 0.0
            else:
                wait = max(state.alarm_at - now, MIN_WAIT)
            await reg.storage.save(self.client_id, state)

        log.debug("bucket_consume", client_id=self.client_id, tokens=state.tokens, wait=wait)
        return wait

    async def alarm(self) -> None:
        """Refill step; re-arms while the bucket is below capacity."""
        reg = self.registry
        async with self.lock:
            state = await reg.storage.load(self.client_id)
            if state is None or state.alarm_at is None:
                return
            if state.alarm_at > reg.clock():
                # Woken ahead of the persisted alarm; an earlier wake-up already refilled
                reg.schedule(self.client_id, state.alarm_at)
                return
            state.tokens = min(reg.capacity, state.tokens + reg.refill_increment)
            state.alarm_at = None
            if state.tokens < reg.capacity:
                state.alarm_at = reg.clock() + reg.refill_interval
                reg.schedule(self.client_id, state.alarm_at)
            await reg.storage.save(self.client_id, state)


class BucketActorRegistry:
    """Looks up actors by client id and owns their refill timers.

    Args:
        storage: Where bucket state is persisted.
        capacity: Tokens in a full bucket.
        refill_increment: Tokens added per alarm.
        refill_interval: Seconds between alarms.
        max_actors: Idle actors beyond this count are dropped from memory;
            their state stays in storage and is reloaded on next use.
        clock: Wall-clock source, seconds since the epoch.
    """

    def __init__(
        self,
        storage: BucketStorage,
        capacity: int = 5,
        refill_increment: int = 1,
        refill_interval: float = 12.0,
        max_actors: int = 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.capacity = capacity
        self.refill_increment = refill_increment
        self.refill_interval = refill_interval
        self.max_actors = max_actors
        self.clock = clock
        self._actors: OrderedDict[str, BucketActor] = OrderedDict()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._alarm_tasks: set[asyncio.Task] = set()

    async def get(self, client_id: str, rearm: bool = True) -> BucketActor:
        """Return the actor for ``client_id``, loading it into memory if evicted.

        A freshly loaded actor re-arms its persisted alarm unless ``rearm`` is
        False, which the alarm path itself uses.
        """
        actor = self._actors.get(client_id)
        if actor is not None:
            self._actors.move_to_end(client_id)
            return actor

        actor = BucketActor(client_id, self)
        self._actors[client_id] = actor
        self._evict()

        if rearm and client_id not in self._timers:
            state = await self.storage.load(client_id)
            if state is not None and state.alarm_at is not None:
                self.schedule(client_id, state.alarm_at)
        return actor

    def schedule(self, client_id: str, at: float) -> None:
        existing = self._timers.pop(client_id, None)
        if existing is not None:
            existing.cancel()
        delay = max(0.0, at - self.clock())
        loop = asyncio.get_running_loop()
        self._timers[client_id] = loop.call_later(delay, self._fire, client_id)

    def _fire(self, client_id: str) -> None:
        self._timers.pop(client_id, None)
        task = asyncio.create_task(self._run_alarm(client_id))
        self._alarm_tasks.add(task)
        task.add_done_callback(self._alarm_tasks.discard)

    async def _run_alarm(self, client_id: str) -> None:
        actor = await self.get(client_id, rearm=False)
        try:
            await actor.alarm()
        except Exception as exc:
            log.error("bucket_alarm_failed", client_id=client_id, error=str(exc), exc_info=True)
            raise

    def _evict(self) -> None:
        if len(self._actors) <= self.max_actors:
            return
        for client_id in list(self._actors):
            if len(self._actors) <= self.max_actors:
                break
            if not self._actors[client_id].lock.locked():
                del self._actors[client_id]

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._alarm_tasks):
            task.cancel()
        if self._alarm_tasks:
            await asyncio.gather(*self._alarm_tasks, return_exceptions=True)
