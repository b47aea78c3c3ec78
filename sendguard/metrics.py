"""
Prometheus metrics for the safety gate.

Counters live in the default prometheus-client registry; a host process
exposes them with its own HTTP endpoint or pushgateway job.
"""

from prometheus_client import Counter, Histogram, generate_latest


# One increment per evaluate() call, labelled with the verdict's reason code
safety_decisions_total = Counter(
    "safety_decisions_total",
    "Total safety gate decisions",
    labelnames=["reason_code"]
)

# result: sent, failed, duplicate, dead_lettered
delivery_outcomes_total = Counter(
    "delivery_outcomes_total",
    "Total recorded delivery outcomes",
    labelnames=["result"]
)

safety_check_latency_seconds = Histogram(
    "safety_check_latency_seconds",
    "Safety gate evaluation latency in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def record_decision(reason_code: str, latency_seconds: float) -> None:
    safety_decisions_total.labels(reason_code=reason_code).inc()
    safety_check_latency_seconds.observe(latency_seconds)


def record_delivery_outcome(result: str) -> None:
    """
    Count a delivery outcome.

    Args:
        result: "sent", "failed", "duplicate" (ledger already holds a
            success for the key) or "dead_lettered" (queue gave up or was halted)
    """
    delivery_outcomes_total.labels(result=result).inc()


def render_metrics() -> bytes:
    """Default registry in Prometheus text exposition format."""
    return generate_latest()
