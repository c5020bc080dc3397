"""Admission control for the HTTP API.

Two limiters guard the service:

  - ApiRateLimit: in-process token bucket per client applied to every /api
    route. Continuous refill, computed lazily on each check.
  - SearchTriggerLimit: durable per-client bucket actor (see
    services/bucket_actor.py) applied to endpoints that start a search
    lifecycle, since each lifecycle costs provider and judge calls.

Both raise RateLimited, rendered as 429 with Retry-After.
"""

import time
from dataclasses import dataclass
from typing import Annotated, Callable

import structlog
from fastapi import Depends, Request, Response

from reposcout.dependencies import client_id
from reposcout.errors import RateLimited
from reposcout.metrics import rate_limited_requests

log = structlog.get_logger(__name__)


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0


class AdmissionController:
    """Per-client token buckets held in memory.

    Args:
        capacity: Bucket size, also the burst a fresh client may spend.
        refill_rate: Tokens added per second.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        capacity: int = 20,
        refill_rate: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def check(self, client: str) -> AdmissionDecision:
        now = self.clock()
        bucket = self._buckets.get(client)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self.capacity), last_refill=now)
            self._buckets[client] = bucket

        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
        bucket.last_refill = now

        if bucket.tokens >= 1:
            bucket.tokens -= 1
            return AdmissionDecision(
                allowed=True, limit=self.capacity, remaining=int(bucket.tokens)
            )

        retry_after = (1 - bucket.tokens) / self.refill_rate if self.refill_rate > 0 else float("inf")
        return AdmissionDecision(
            allowed=False, limit=self.capacity, remaining=0, retry_after=retry_after
        )


async def api_rate_limit(request: Request, response: Response) -> None:
    admission: AdmissionController = request.app.state.admission
    client = client_id(request)
    decision = admission.check(client)
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if not decision.allowed:
        rate_limited_requests.labels(limiter="api").inc()
        log.info("api_rate_limited", client_id=client, retry_after=decision.retry_after)
        raise RateLimited(decision.retry_after, limit=decision.limit)


async def search_trigger_limit(request: Request) -> None:
    registry = request.app.state.trigger_buckets
    client = client_id(request)
    actor = await registry.get(client)
    wait = await actor.consume()
    if wait > 0:
        rate_limited_requests.labels(limiter="search_trigger").inc()
        log.info("search_trigger_rate_limited", client_id=client, retry_after=wait)
        raise RateLimited(wait, message="Too many searches started", limit=registry.capacity)


ApiRateLimit = Annotated[None, Depends(api_rate_limit)]
SearchTriggerLimit = Annotated[None, Depends(search_trigger_limit)]
