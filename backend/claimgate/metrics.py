"""
Claimgate - Prometheus Metrics

All collectors live on a private registry exposed at GET /metrics.
"""
import prometheus_client

REGISTRY = prometheus_client.CollectorRegistry()

SUBMISSIONS_TOTAL = prometheus_client.Counter(
    "claimgate_submissions_total",
    "Observation submissions by terminal outcome",
    ["outcome"],
    registry=REGISTRY,
)
EVALUATOR_ERRORS_TOTAL = prometheus_client.Counter(
    "claimgate_evaluator_errors_total",
    "Evaluator timeouts, transport errors and unparseable replies",
    registry=REGISTRY,
)
GATE_BLOCKS_TOTAL = prometheus_client.Counter(
    "claimgate_gate_blocks_total",
    "Submissions refused because the origin is blocked",
    registry=REGISTRY,
)
RELAY_ATTEMPTS_TOTAL = prometheus_client.Counter(
    "claimgate_relay_attempts_total",
    "Relay submission attempts by result",
    ["result"],
    registry=REGISTRY,
)
RELAY_LATENCY_SECONDS = prometheus_client.Histogram(
    "claimgate_relay_latency_seconds",
    "Time from first submission attempt to confirmation or fallback",
    registry=REGISTRY,
)
AVAILABLE_TOKENS = prometheus_client.Gauge(
    "claimgate_available_tokens",
    "Tokens deposited and unclaimed",
    registry=REGISTRY,
)


def render_latest() -> bytes:
    return prometheus_client.generate_latest(REGISTRY)


CONTENT_TYPE = prometheus_client.CONTENT_TYPE_LATEST
