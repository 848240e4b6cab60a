"""
Prometheus metrics for the inquiry sync core.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Poll cycle counter (scope, result)
- Suppressed opening message counter
- Notification counter (kind)
- Background failure counter (operation)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# scope: registry, thread
# result: ok, error, skipped
poll_cycles_total = Counter(
    "poll_cycles_total",
    "Total polling cycles by scope and outcome",
    labelnames=["scope", "result"]
)

synthetic_messages_suppressed_total = Counter(
    "synthetic_messages_suppressed_total",
    "Opening messages suppressed because a persisted copy exists"
)

# kind: success, error, info
notifications_total = Counter(
    "notifications_total",
    "User-facing notifications emitted",
    labelnames=["kind"]
)

# operation: mark_read, auto_contact, poll
background_failures_total = Counter(
    "background_failures_total",
    "Best-effort operations that failed and were swallowed",
    labelnames=["operation"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_poll(scope: str, result: str) -> None:
    """
    Record the outcome of one polling cycle.

    Args:
        scope: "registry" or "thread"
        result: Cycle result - one of:
            - "ok": fetch completed and state was replaced
            - "error": fetch failed, previous state retained
            - "skipped": a fetch for the same key was already in flight
    """
    poll_cycles_total.labels(scope=scope, result=result).inc()


def record_synthetic_suppressed() -> None:
    synthetic_messages_suppressed_total.inc()


def record_notification(kind: str) -> None:
    notifications_total.labels(kind=kind).inc()


def record_background_failure(operation: str) -> None:
    background_failures_total.labels(operation=operation).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
