"""Search trigger endpoint.

POST /api/v1/sessions/{id}/search -- run a search lifecycle for a session.

With ``wait=true`` the request blocks until the lifecycle ends and returns
every round summary. Otherwise the lifecycle runs as a tracked background
task and the endpoint answers 202 immediately; progress can be followed on
the live channel or through the attempts/results endpoints.
"""

import asyncio
from typing import Union

import structlog
from fastapi import APIRouter, Query, Response

from reposcout.dependencies import ApiAuth, Controller, Store
from reposcout.errors import NotFoundError, ScoutError
from reposcout.middleware.rate_limiter import ApiRateLimit, SearchTriggerLimit
from reposcout.schemas.search import SearchAccepted, SearchLifecycleResponse, SearchRequest
from reposcout.services.dedupe import collect_excluded_keys
from reposcout.services.search_lifecycle import ConvergenceController

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["search"])

# Track background tasks to prevent GC before completion
_background_tasks: set[asyncio.Task] = set()


def _track_task(coro) -> asyncio.Task:
    """Create a tracked background task that removes itself when done."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def cancel_background_searches() -> None:
    """Cancel lifecycles still running at shutdown."""
    tasks = list(_background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def _run_in_background(
    controller: ConvergenceController,
    session_id: str,
    body: SearchRequest,
    natural_language_request: str,
) -> None:
    try:
        result = await controller.run(session_id, body, natural_language_request)
    except ScoutError as exc:
        log.error("background_search_failed", session_id=session_id, code=exc.code, error=exc.message)
        return
    log.info(
        "background_search_finished",
        session_id=session_id,
        outcome=result.outcome.value,
        rounds=len(result.attempts),
    )


@router.post(
    "/sessions/{session_id}/search",
    response_model=Union[SearchLifecycleResponse, SearchAccepted],
    responses={202: {"model": SearchAccepted}},
)
async def start_search(
    session_id: str,
    body: SearchRequest,
    response: Response,
    _auth: ApiAuth,
    _rate: ApiRateLimit,
    _trigger: SearchTriggerLimit,
    store: Store,
    controller: Controller,
    wait: bool = Query(False, description="Block until the lifecycle finishes"),
) -> Union[SearchLifecycleResponse, SearchAccepted]:
    session = await store.get_session(session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    natural_language_request = body.natural_language_request or session.natural_language_request

    if wait:
        result = await controller.run(session_id, body, natural_language_request)
        return result.to_response()

    # Reject foreign attempt ids now rather than in the background task
    await collect_excluded_keys(store, session_id, body.exclude_attempt_ids)
    _track_task(_run_in_background(controller, session_id, body, natural_language_request))
    log.info("search_accepted", session_id=session_id, query=body.query)
    response.status_code = 202
    return SearchAccepted(session_id=session_id, query=body.query)
