"""Prometheus metrics for the search pipeline."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request
from starlette.responses import Response

search_rounds = Counter(
    "reposcout_search_rounds_total",
    "Completed or failed search rounds",
    ["status"],
)
search_lifecycles = Counter(
    "reposcout_search_lifecycles_total",
    "Search lifecycles by terminal outcome",
    ["outcome"],
)
round_duration = Histogram(
    "reposcout_round_duration_seconds",
    "End-to-end latency of one expand-retrieve-judge round",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0],
)
judge_duration = Histogram(
    "reposcout_judge_duration_seconds",
    "Judge call latency",
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0],
)
github_requests = Counter(
    "reposcout_github_requests_total",
    "GitHub API requests",
    ["kind", "status"],
)
rate_limited_requests = Counter(
    "reposcout_rate_limited_total",
    "Requests rejected by admission control",
    ["limiter"],
)


async def metrics_endpoint(request: Request) -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
