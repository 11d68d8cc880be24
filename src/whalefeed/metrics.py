"""
Prometheus metrics
Exposed by the API server on /metrics
"""

from prometheus_client import (
    Counter, Gauge,
    generate_latest, CONTENT_TYPE_LATEST,
    REGISTRY,
)

# ========== Metrics ==========

POLLS_TOTAL = Counter(
    'whalefeed_polls_total',
    'Poll cycles by outcome',
    ['category', 'outcome']
)

RECORDS_TOTAL = Counter(
    'whalefeed_records_total',
    'Upstream records by ingest result',
    ['category', 'result']
)

SCHEMA_MISS_TOTAL = Counter(
    'whalefeed_schema_miss_total',
    'Responses that parsed but held no record array',
    ['category']
)

WS_RECONNECT_TOTAL = Counter(
    'whalefeed_ws_reconnect_total',
    'Stream listener reconnections'
)

BUFFER_SIZE = Gauge(
    'whalefeed_buffer_size',
    'Records currently buffered',
    ['category']
)

BACKOFF_SECONDS = Gauge(
    'whalefeed_backoff_seconds',
    'Current rate-limit backoff',
    ['category']
)


# ========== Helpers ==========

def record_poll(category: str, outcome: str) -> None:
    POLLS_TOTAL.labels(category=category, outcome=outcome).inc()


def record_ingest(category: str, result: str, count: int = 1) -> None:
    if count > 0:
        RECORDS_TOTAL.labels(category=category, result=result).inc(count)


def record_schema_miss(category: str) -> None:
    SCHEMA_MISS_TOTAL.labels(category=category).inc()


def record_ws_reconnect() -> None:
    WS_RECONNECT_TOTAL.inc()


def set_buffer_size(category: str, size: int) -> None:
    BUFFER_SIZE.labels(category=category).set(size)


def set_backoff(category: str, seconds: float) -> None:
    BACKOFF_SECONDS.labels(category=category).set(seconds)


def render_latest() -> tuple[bytes, str]:
    """Exposition body and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
