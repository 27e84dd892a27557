"""
Prometheus metrics for the anonbox API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Submission outcome counter (kind, result)
- Enrichment step failure counter (step)
- Notification outcome counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# kind: message, abandoned
# result: created, rejected, skipped, error
submissions_total = Counter(
    "submissions_total",
    "Total submission outcomes",
    labelnames=["kind", "result"]
)

# step: ip, geolocation, user_agent, source, phone, language
enrichment_failures_total = Counter(
    "enrichment_failures_total",
    "Enrichment steps that fell back to their default value",
    labelnames=["step"]
)

# result: sent, failed, disabled
notifications_total = Counter(
    "notifications_total",
    "Outbound notification outcomes",
    labelnames=["result"]
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
    # Collapse numeric path segments (e.g. /message/1734180000000 -> /message/:id)
    # to avoid high-cardinality labels
    segments = [":id" if part.isdigit() else part for part in path.split("?")[0].split("/")]
    normalized_path = "/".join(segments)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_submission_outcome(kind: str, result: str) -> None:
    submissions_total.labels(kind=kind, result=result).inc()


def record_enrichment_failure(step: str) -> None:
    enrichment_failures_total.labels(step=step).inc()


def record_notification_outcome(result: str) -> None:
    notifications_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
