"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (kind, result)
- Auto-reply pipeline outcome counter (outcome)
- Provider send counter (channel_type, result)

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

# result: accepted, duplicate, updated, ignored, invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["kind", "result"]
)

# outcome: replied, no_reply, failed, disabled
auto_reply_total = Counter(
    "auto_reply_total",
    "Automated reply pipeline outcomes",
    labelnames=["outcome"]
)

provider_sends_total = Counter(
    "provider_sends_total",
    "Outbound provider send attempts",
    labelnames=["channel_type", "result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_outcome(kind: str, result: str) -> None:
    """Record a webhook processing outcome for sms/whatsapp/voice/status."""
    webhook_requests_total.labels(kind=kind, result=result).inc()


def record_auto_reply_outcome(outcome: str) -> None:
    auto_reply_total.labels(outcome=outcome).inc()


def record_provider_send(channel_type: str, result: str) -> None:
    provider_sends_total.labels(channel_type=channel_type, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
