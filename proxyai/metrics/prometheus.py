from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

metrics_router = APIRouter()

RELAY_REQUESTS = Counter("proxy_requests_total", "Requests accepted for relay", ["target"])
RELAY_FAILURES = Counter("proxy_failures_total", "Relay failures by kind", ["target", "kind"])
RELAY_BYTES = Counter("proxy_response_bytes_total", "Response body bytes relayed to clients", ["target"])
RELAY_DURATION = Histogram(
    "proxy_relay_duration_seconds",
    "Wall-clock duration of a relay, from request entry to the last body byte",
    ["target"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus exposition endpoint for proxy process metrics."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
