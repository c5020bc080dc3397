"""HTTP client for the RepoScout backend API.

BackendClient wraps httpx.AsyncClient to provide a clean interface for
making authenticated POST and GET requests to the FastAPI backend, with
circuit breaker protection and per-operation SLA timeouts.
"""

import asyncio
import time
from typing import Optional

import httpx

from reposcout_mcp.config import settings

# The backend answers 502 when GitHub or the judge failed a round. The
# backend itself is healthy, so these do not count against the breaker.
UPSTREAM_FAILURE_STATUS = 502


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open and requests are blocked."""
    pass


class BackendUnavailableError(Exception):
    """Raised when a backend call fails (timeout, connection error, 5xx HTTP error)."""
    pass


class CircuitBreaker:
    """Async circuit breaker with three states: closed, open, half-open.

    - closed: requests flow normally, failures are counted
    - open: requests are immediately rejected with CircuitOpenError
    - half-open: one probe request is allowed; success -> closed, failure -> open
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30.0, clock=time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "closed"
        self._clock = clock

    async def call(self, coro_factory, timeout: float):
        """Execute coroutine factory with circuit breaker protection and timeout.

        Args:
            coro_factory: A zero-argument callable that returns a coroutine.
            timeout: Per-request SLA timeout in seconds.
        """
        if self.state == "open":
            if self._clock() - self.last_failure_time > self.recovery_timeout:
                self.state = "half-open"
            else:
                raise CircuitOpenError(
                    "RepoScout backend is temporarily unavailable. "
                    "Please try again in a few seconds."
                )

        try:
            result = await asyncio.wait_for(coro_factory(), timeout=timeout)
            self._on_success()
            return result
        except (httpx.HTTPError, asyncio.TimeoutError, ConnectionError, OSError) as exc:
            self._on_failure()
            raise BackendUnavailableError(str(exc)) from exc

    def _on_success(self):
        self.failure_count = 0
        self.state = "closed"

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"


class BackendClient:
    """Thin wrapper around httpx.AsyncClient for backend API calls.

    Manages a persistent async HTTP client with connection pooling,
    circuit breaker protection, and per-request SLA timeouts.
    The bearer token is forwarded from MCP client headers.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=httpx.Timeout(settings.search_timeout, connect=2.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        )

    @staticmethod
    def _headers(api_token: str) -> dict:
        return {"Authorization": f"Bearer {api_token}"} if api_token else {}

    def _check(self, resp: httpx.Response) -> dict:
        # 5xx are server errors, counted as circuit breaker failures
        if resp.status_code >= 500 and resp.status_code != UPSTREAM_FAILURE_STATUS:
            self.breaker._on_failure()
            raise BackendUnavailableError(f"Backend returned {resp.status_code}")
        resp.raise_for_status()  # 4xx and upstream 502 raise HTTPStatusError without tripping
        return resp.json()

    async def post(
        self,
        path: str,
        json: dict,
        api_token: str,
        params: Optional[dict] = None,
        timeout: float = 2.0,
    ) -> dict:
        """POST to backend with circuit breaker protection.

        Args:
            path: URL path (e.g. "/api/v1/sessions/{id}/search")
            json: Request body as a dict (serialized to JSON)
            api_token: Bearer token forwarded from MCP client headers
            params: Optional query string parameters
            timeout: Per-request SLA timeout in seconds

        Returns:
            Parsed JSON response body as dict

        Raises:
            CircuitOpenError: When circuit breaker is open
            BackendUnavailableError: On timeout, connection error, or 5xx response
            httpx.HTTPStatusError: On 4xx or upstream 502 responses
        """
        async def _request():
            return await self.client.post(
                path, json=json, params=params, headers=self._headers(api_token),
            )

        resp = await self.breaker.call(_request, timeout=timeout)
        return self._check(resp)

    async def get(
        self,
        path: str,
        api_token: str,
        params: Optional[dict] = None,
        timeout: float = 2.0,
    ) -> dict:
        """GET from backend with circuit breaker protection.

        None-valued params are left out of the query string.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}

        async def _request():
            return await self.client.get(path, params=query, headers=self._headers(api_token))

        resp = await self.breaker.call(_request, timeout=timeout)
        return self._check(resp)

    async def close(self) -> None:
        """Close the underlying httpx client and release connections."""
        await self.client.aclose()


# Module-level singleton, shared across all tool invocations
backend = BackendClient()
