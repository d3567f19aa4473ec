"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
payment_worker_runs_total = Counter(
    "payment_worker_runs_total",
    "Payment worker invocations",
    ["result"],  # ran, locked
)

payments_settled_total = Counter(
    "payments_settled_total",
    "Payment records moved out of PROCESSING",
    ["outcome"],  # paid, already_applied, api_retry, failed
)

payment_reconnect_total = Counter(
    "payment_reconnect_total",
    "Reconnection attempts after payment",
    ["status"],
)

payments_readmitted_total = Counter(
    "payments_readmitted_total",
    "API_RETRY records re-admitted to QUEUED",
)

payments_orphans_requeued_total = Counter(
    "payments_orphans_requeued_total",
    "PROCESSING records requeued by the orphan sweep",
)

lock_acquire_total = Counter(
    "worker_lock_acquire_total",
    "Worker lease acquire attempts",
    ["lock_name", "result"],  # acquired, contended
)

stale_locks_expired_total = Counter(
    "worker_locks_expired_total",
    "Stale worker leases removed by the janitor",
)

reconnect_requests_total = Counter(
    "reconnect_requests_total",
    "Total Reconnection API requests",
    ["status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Gauges
payment_records_by_status = Gauge(
    "payment_records_by_status",
    "Payment record counts from the last stats() call",
    ["status"],
)

# Histograms
payment_worker_run_duration_seconds = Histogram(
    "payment_worker_run_duration_seconds",
    "Payment worker run duration while holding the lease",
    buckets=[0.5, 1, 5, 10, 30, 60, 120],
)

reconnect_request_duration_seconds = Histogram(
    "reconnect_request_duration_seconds",
    "Reconnection API request duration",
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
