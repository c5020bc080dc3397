"""Live channel websocket.

Connect to /ws/sessions/{id} (bearer token in the Authorization header or
``?token=`` when an API token is configured).

Messages (Client -> Server):
    {"type": "start_search", "query": "...", ...}   start a lifecycle
    {"type": "cancel_attempt", "attempt_id": 12}    stop the running lifecycle

Messages (Server -> Client): attempt_started, github_batch, judge_update,
refined_search, finalized, error, ack. One lifecycle runs per connection
at a time.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import TypeAdapter, ValidationError

from reposcout.config import settings
from reposcout.dependencies import bearer_token, client_id, token_matches
from reposcout.errors import ScoutError, excerpt
from reposcout.metrics import rate_limited_requests
from reposcout.schemas.events import Ack, CancelAttempt, ErrorEvent, InboundMessage, StartSearch
from reposcout.schemas.search import SearchRequest
from reposcout.services.live_channel import LiveChannel, LiveChannelObserver
from reposcout.services.search_lifecycle import CancelToken, ConvergenceController

log = structlog.get_logger(__name__)

router = APIRouter(tags=["live"])

_inbound = TypeAdapter(InboundMessage)

# Application close codes
CLOSE_UNAUTHORIZED = 4401
CLOSE_NOT_FOUND = 4404


async def _run_live_search(
    controller: ConvergenceController,
    session_id: str,
    request: SearchRequest,
    natural_language_request: str,
    observer: LiveChannelObserver,
    cancel: CancelToken,
) -> None:
    try:
        result = await controller.run(
            session_id, request, natural_language_request, observer=observer, cancel=cancel
        )
        log.info("live_search_finished", session_id=session_id, outcome=result.outcome.value)
    except ScoutError as exc:
        log.error("live_search_failed", session_id=session_id, code=exc.code, error=exc.message)
        await observer.flush()
        await observer.channel.send(ErrorEvent(code=exc.code, message=exc.message))
    finally:
        await observer.close()


@router.websocket("/ws/sessions/{session_id}")
async def live_session(
    websocket: WebSocket,
    session_id: str,
    token: Optional[str] = Query(None),
):
    state = websocket.app.state
    if not token_matches(bearer_token(websocket) or token):
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    session = await state.store.get_session(session_id)
    if session is None:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    channel = LiveChannel(websocket)
    channel.start()
    log.info("live_channel_connected", session_id=session_id)

    search_task: Optional[asyncio.Task] = None
    observer: Optional[LiveChannelObserver] = None
    cancel: Optional[CancelToken] = None

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = _inbound.validate_json(raw)
            except ValidationError as exc:
                await channel.send(ErrorEvent(code="invalid_request", message=excerpt(str(exc))))
                continue

            running = search_task is not None and not search_task.done()

            if isinstance(message, CancelAttempt):
                if running and (message.attempt_id is None or message.attempt_id in observer.attempt_ids):
                    cancel.cancel()
                    log.info("live_search_cancel_requested", session_id=session_id, attempt_id=message.attempt_id)
                await channel.send(Ack(attempt_id=message.attempt_id))
                continue

            if isinstance(message, StartSearch):
                if running:
                    await channel.send(ErrorEvent(
                        code="search_in_progress",
                        message="A search is already running on this connection",
                    ))
                    continue

                actor = await state.trigger_buckets.get(client_id(websocket))
                wait = await actor.consume()
                if wait > 0:
                    rate_limited_requests.labels(limiter="search_trigger").inc()
                    await channel.send(ErrorEvent(
                        code="rate_limited",
                        message=f"Too many searches started; retry in {wait:.1f}s",
                    ))
                    continue

                request = SearchRequest(**message.model_dump(exclude={"type"}))
                controller = ConvergenceController(state.store, state.github_http, state.judge)
                observer = LiveChannelObserver(
                    channel, settings.live_repo_batch_size, settings.live_repo_batch_interval
                )
                cancel = CancelToken()
                search_task = asyncio.create_task(_run_live_search(
                    controller, session_id, request, session.natural_language_request, observer, cancel,
                ))
    except WebSocketDisconnect:
        log.info("live_channel_disconnected", session_id=session_id)
    finally:
        if search_task is not None and not search_task.done():
            cancel.cancel()
            search_task.cancel()
            await asyncio.gather(search_task, return_exceptions=True)
        await channel.close()
