"""Error taxonomy for the search pipeline.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
outermost boundary (FastAPI exception handlers, the live channel) can render
``{code, message}`` without inspecting exception types.
"""

from typing import Optional

# Provider/judge bodies are never echoed back in full
MAX_BODY_EXCERPT = 300


def excerpt(body: Optional[str], limit: int = MAX_BODY_EXCERPT) -> str:
    if not body:
        return ""
    body = body.strip()
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


class ScoutError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidRequestError(ScoutError):
    """Caller input is malformed; rejected before any round starts."""

    code = "invalid_request"
    status_code = 400


class NotFoundError(ScoutError):
    code = "not_found"
    status_code = 404


class Unauthorized(ScoutError):
    code = "unauthorized"
    status_code = 401


class RetrievalError(ScoutError):
    """GitHub answered with a non-success status. Aborts the current round."""

    code = "retrieval_failed"
    status_code = 502

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"GitHub API error {status}: {excerpt(body)}")


class JudgeUnavailableError(ScoutError):
    """Judge could not be reached, is not configured, or returned non-2xx."""

    code = "judge_unavailable"
    status_code = 502


class JudgeSchemaError(ScoutError):
    """Judge response failed structural validation. Aborts the current round."""

    code = "judge_schema_invalid"
    status_code = 502


class StoreError(ScoutError):
    """Durable persistence failed. Surfaced verbatim."""

    code = "store_error"
    status_code = 500


class RateLimited(ScoutError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: float, message: str = "Too many requests", limit: Optional[int] = None):
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(message)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after": round(self.retry_after, 3)}


class SearchAborted(ScoutError):
    """A round failed; carries the summaries of rounds completed before it."""

    def __init__(self, cause: ScoutError, attempts: list):
        self.cause = cause
        self.attempts = attempts
        self.code = cause.code
        self.status_code = cause.status_code
        super().__init__(cause.message)
