"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Total number of payment intents pre-created",
    ["mode"],
)

payment_intents_terminal_total = Counter(
    "payment_intents_terminal_total",
    "Payment intents that reached a terminal state",
    ["status", "source"],  # PAID/FAILED; callback/initiate/simulator
)

payment_callbacks_total = Counter(
    "payment_callbacks_total",
    "Gateway callbacks received by outcome",
    ["outcome"],  # paid, failed, duplicate, not_found, malformed, forbidden, error
)

payment_amount_mismatch_total = Counter(
    "payment_amount_mismatch_total",
    "Callbacks whose confirmed amount differed from the recorded amount",
)

payment_side_effect_failures_total = Counter(
    "payment_side_effect_failures_total",
    "Secondary effects that failed without reversing the payment state",
    ["effect"],  # entitlement_grant, duplicate_delete, intent_complete, audit
)

entitlement_grants_total = Counter(
    "entitlement_grants_total",
    "Entitlement grant attempts by result",
    ["status"],  # granted, already_entitled, skipped, failed
)

mpesa_requests_total = Counter(
    "mpesa_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
mpesa_request_duration_seconds = Histogram(
    "mpesa_request_duration_seconds",
    "Daraja API request duration",
    ["operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 15],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 15],
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
