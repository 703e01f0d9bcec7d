from __future__ import annotations

from prometheus_client import Counter, Histogram

federation_events_total = Counter(
    "federation_events_total",
    "Total number of audited federation events",
    ["event_type", "outcome"],
)
federation_outbound_requests_total = Counter(
    "federation_outbound_requests_total",
    "Total number of outbound calls to federated servers",
    ["operation", "status"],
)
federation_outbound_latency = Histogram(
    "federation_outbound_latency_seconds",
    "Latency of outbound calls to federated servers",
    ["operation"],
)

__all__ = [
    "federation_events_total",
    "federation_outbound_requests_total",
    "federation_outbound_latency",
]
