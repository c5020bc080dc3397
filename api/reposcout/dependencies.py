"""Shared FastAPI dependencies.

Service objects are created once in the lifespan and kept on ``app.state``;
these helpers hand them to route handlers.
"""

import hmac
from typing import Annotated, Optional

from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from reposcout.config import settings
from reposcout.errors import Unauthorized
from reposcout.services.search_lifecycle import ConvergenceController
from reposcout.services.store import ResultStore


def client_id(conn: HTTPConnection) -> str:
    """Best-effort client identity for rate limiting: first forwarded hop, else peer."""
    forwarded = conn.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if conn.client and conn.client.host:
        return conn.client.host
    return "anonymous"


def token_matches(presented: Optional[str]) -> bool:
    """True when no API token is configured or ``presented`` equals it."""
    if not settings.api_token:
        return True
    if not presented:
        return False
    return hmac.compare_digest(presented, settings.api_token)


def bearer_token(conn: HTTPConnection) -> Optional[str]:
    header = conn.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def require_api_token(request: Request) -> None:
    if not token_matches(bearer_token(request)):
        raise Unauthorized("Missing or invalid bearer token")


def get_store(request: Request) -> ResultStore:
    return request.app.state.store


def get_controller(request: Request) -> ConvergenceController:
    state = request.app.state
    return ConvergenceController(state.store, state.github_http, state.judge)


ApiAuth = Annotated[None, Depends(require_api_token)]
Store = Annotated[ResultStore, Depends(get_store)]
Controller = Annotated[ConvergenceController, Depends(get_controller)]
