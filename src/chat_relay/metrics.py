"""Prometheus metrics for chat-relay.

Metrics are always collected; ``GET /metrics`` only exposes them when
ENABLE_METRICS is set.
"""

import time

from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Request metrics
REQUESTS_TOTAL = Counter(
    "chat_relay_requests_total",
    "Total requests",
    ["endpoint", "method", "status"]
)

REQUEST_DURATION = Histogram(
    "chat_relay_request_duration_seconds",
    "Request duration in seconds",
    ["endpoint", "method"]
)

# Relay metrics
RELAY_OUTCOMES_TOTAL = Counter(
    "chat_relay_relay_outcomes_total",
    "Relay requests by outcome (completed, failed, aborted, rejected)",
    ["outcome"]
)

TOKENS_TOTAL = Counter(
    "chat_relay_tokens_total",
    "Tokens reported by upstream providers",
    ["vendor", "kind"]
)

STREAM_DURATION = Histogram(
    "chat_relay_stream_duration_seconds",
    "Time from provider invocation to terminal event",
    ["vendor"],
    buckets=(0.5, 1, 2.5, 5, 10, 20, 30, 60, 120, 300),
)

GUARD_REJECTIONS_TOTAL = Counter(
    "chat_relay_guard_rejections_total",
    "Requests rejected before streaming",
    ["guard"]
)

PERSISTENCE_FAILURES_TOTAL = Counter(
    "chat_relay_persistence_failures_total",
    "Bookkeeping writes that failed after a generation completed",
    ["operation"]
)

HEALTH_CHECKS_TOTAL = Counter(
    "chat_relay_health_checks_total",
    "Total health checks",
    ["endpoint", "status"]
)


def get_metrics_response(enabled: bool) -> Response:
    """Get Prometheus metrics response."""
    if not enabled:
        return Response(
            content="# Metrics disabled. Set ENABLE_METRICS=1 to enable.\n",
            media_type="text/plain"
        )

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


class MetricsMiddleware:
    """Middleware to collect request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        method = scope["method"]
        status_code = [500]

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_code[0] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            # Route template keeps label cardinality bounded.
            route = scope.get("route")
            endpoint = getattr(route, "path", None) or scope["path"]

            REQUESTS_TOTAL.labels(endpoint=endpoint, method=method, status=status_code[0]).inc()
            REQUEST_DURATION.labels(endpoint=endpoint, method=method).observe(time.time() - start_time)
