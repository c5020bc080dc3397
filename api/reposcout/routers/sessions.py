"""Session browsing endpoints.

POST   /api/v1/sessions                     -- create a session for an intent
GET    /api/v1/sessions                     -- list live sessions, newest first
GET    /api/v1/sessions/{id}                -- session with counts and latest attempt
DELETE /api/v1/sessions/{id}                -- soft delete
GET    /api/v1/sessions/{id}/attempts       -- rounds run for the session
GET    /api/v1/sessions/{id}/results        -- judged repositories, filterable
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, Response

from reposcout.dependencies import ApiAuth, Store
from reposcout.errors import NotFoundError
from reposcout.middleware.rate_limiter import ApiRateLimit
from reposcout.schemas.session import (
    AttemptList,
    ResultList,
    SessionCreate,
    SessionDetail,
    SessionList,
    SessionResponse,
)

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sessions"])


async def _require_session(store, session_id: str):
    session = await store.get_session(session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def create_session(
    body: SessionCreate,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
) -> SessionResponse:
    session = await store.create_session(body.natural_language_request, body.session_id)
    log.info("session_created", session_id=session.id)
    return SessionResponse.model_validate(session)


@router.get("/sessions", response_model=SessionList)
async def list_sessions(
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = Query(None),
) -> SessionList:
    rows, next_cursor = await store.list_sessions(limit=limit, cursor=cursor)
    return SessionList(
        items=[SessionResponse.model_validate(r) for r in rows],
        next_cursor=next_cursor,
    )


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
) -> SessionDetail:
    session = await _require_session(store, session_id)
    return SessionDetail(
        session=SessionResponse.model_validate(session),
        attempts_count=await store.count_attempts(session_id),
        results_count=await store.count_results(session_id),
        latest_attempt=await store.get_latest_attempt(session_id),
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
) -> Response:
    if not await store.soft_delete_session(session_id):
        raise NotFoundError(f"Session {session_id} not found")
    log.info("session_deleted", session_id=session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/attempts", response_model=AttemptList)
async def list_attempts(
    session_id: str,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
) -> AttemptList:
    await _require_session(store, session_id)
    return AttemptList(attempts=await store.list_attempts(session_id))


@router.get("/sessions/{session_id}/results", response_model=ResultList)
async def list_results(
    session_id: str,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    store: Store,
    attempt_id: Optional[int] = Query(None),
    min_score: Optional[float] = Query(None, ge=0.0, le=1.0),
    q: Optional[str] = Query(None, max_length=200),
    dedupe: bool = Query(True),
    sort: str = Query("score_desc"),
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    exclude_previous_attempts: bool = Query(False),
) -> ResultList:
    await _require_session(store, session_id)
    items, next_cursor = await store.list_results(
        session_id,
        attempt_id=attempt_id,
        min_score=min_score,
        q=q,
        dedupe=dedupe,
        sort=sort,
        limit=limit,
        cursor=cursor,
        exclude_previous_attempts=exclude_previous_attempts,
    )
    return ResultList(items=items, next_cursor=next_cursor)
