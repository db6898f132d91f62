"""
Prometheus metrics for the conversation mirror.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Backfill run and message counters
- Data-integrity conflict counter (source)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds (default buckets)
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: accepted, duplicate, ignored, invalid_signature, validation_error,
# misconfigured, conflict
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# result: completed, failed, skipped, cancelled
backfill_runs_total = Counter(
    "backfill_runs_total",
    "Historical reconciliation runs by result",
    labelnames=["result"]
)

# outcome: inserted, existing, foreign
backfill_messages_total = Counter(
    "backfill_messages_total",
    "Remote history messages seen by the reconciler",
    labelnames=["outcome"]
)

# source: webhook, backfill
integrity_conflicts_total = Counter(
    "integrity_conflicts_total",
    "Message ids observed with differing immutable fields",
    labelnames=["source"]
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
    # (conversation ids are collapsed into a placeholder)
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/conversations/"):
        parts = normalized_path.split("/")
        parts[2] = "{id}"
        normalized_path = "/".join(parts)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_backfill_run(result: str) -> None:
    backfill_runs_total.labels(result=result).inc()


def record_backfill_messages(outcome: str, count: int = 1) -> None:
    if count:
        backfill_messages_total.labels(outcome=outcome).inc(count)


def record_integrity_conflict(source: str) -> None:
    integrity_conflicts_total.labels(source=source).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
