import math
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from reposcout.config import settings
from reposcout.database import async_session_factory
from reposcout.errors import RateLimited, ScoutError, SearchAborted
from reposcout.logging_config import configure_logging
from reposcout.metrics import metrics_endpoint
from reposcout.middleware.logging_middleware import RequestLoggingMiddleware
from reposcout.middleware.rate_limiter import AdmissionController
from reposcout.routers import live, search, sessions
from reposcout.services.bucket_actor import BucketActorRegistry, RedisBucketStorage
from reposcout.services.judge import JudgeClient
from reposcout.services.store import ResultStore

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    # Startup: shared connections and service objects live on app.state
    app.state.redis = aioredis.from_url(
        settings.redis_url, encoding="utf-8", decode_responses=True
    )
    app.state.github_http = httpx.AsyncClient(timeout=settings.http_timeout)
    app.state.judge_http = httpx.AsyncClient(timeout=settings.http_timeout)

    app.state.store = ResultStore(async_session_factory)
    app.state.judge = JudgeClient(
        app.state.judge_http,
        api_key=settings.openai_api_key,
        api_url=settings.judge_api_url,
        model=settings.judge_model,
    )
    app.state.admission = AdmissionController(
        capacity=settings.rate_limit_capacity,
        refill_rate=settings.rate_limit_refill_per_second,
    )
    app.state.trigger_buckets = BucketActorRegistry(
        RedisBucketStorage(app.state.redis),
        capacity=settings.trigger_bucket_capacity,
        refill_increment=settings.trigger_bucket_refill_increment,
        refill_interval=settings.trigger_bucket_refill_seconds,
        max_actors=settings.trigger_bucket_max_actors,
    )
    log.info("reposcout_started", judge_model=settings.judge_model)
    try:
        yield
    finally:
        await search.cancel_background_searches()
        await app.state.trigger_buckets.close()
        await app.state.github_http.aclose()
        await app.state.judge_http.aclose()
        # Shutdown: close Redis connection
        await app.state.redis.aclose()


app = FastAPI(title="RepoScout API", version="0.1.0", lifespan=lifespan)

# Register request logging middleware (runs on every request)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ScoutError)
async def scout_error_handler(request: Request, exc: ScoutError) -> JSONResponse:
    body = exc.to_dict()
    headers = {}
    if isinstance(exc, SearchAborted):
        body["attempts"] = [a.model_dump(mode="json") for a in exc.attempts]
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = "0"
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "code": "invalid_request",
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


app.include_router(sessions.router)
app.include_router(search.router)
app.include_router(live.router)

# Prometheus metrics endpoint
app.get("/metrics")(metrics_endpoint)


@app.get("/health")
async def health_check(response: Response):
    """Health check: verifies the database and Redis.

    Returns 200 if all components are healthy, 503 if any component is unhealthy.
    """
    checks = {}
    overall_healthy = True

    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    try:
        await app.state.redis.ping()
        checks["redis"] = {"status": "healthy"}
    except Exception as e:
        checks["redis"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    response.status_code = 200 if overall_healthy else 503
    return {"status": "healthy" if overall_healthy else "unhealthy", "checks": checks}
