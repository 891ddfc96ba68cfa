"""Prometheus metrics definitions for esg_sync."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

SYNC_RUNS = Counter(
    "sync_runs_total",
    "Total sync runs by connector type and terminal state.",
    labelnames=("connector_type", "state"),
)

SYNC_REJECTIONS = Counter(
    "sync_run_rejections_total",
    "Sync or probe requests rejected before any outbound call, by reason.",
    labelnames=("reason",),
)

SYNC_RECORD_OUTCOMES = Counter(
    "sync_record_outcomes_total",
    "Per-record sync outcomes by connector type and outcome.",
    labelnames=("connector_type", "outcome"),
)

SYNC_RUN_DURATION = Histogram(
    "sync_run_duration_seconds",
    "Distribution of sync run durations in seconds.",
    labelnames=("connector_type",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)

SYNC_ACTIVE_RUNS = Gauge(
    "sync_active_runs",
    "Number of sync runs currently in flight.",
    labelnames=("connector_type",),
)

OUTBOUND_ATTEMPTS = Counter(
    "connector_outbound_attempts_total",
    "Outbound calls to source systems by operation and outcome kind.",
    labelnames=("operation", "outcome"),
)

RATE_LIMIT_WAIT = Histogram(
    "connector_rate_limit_wait_seconds",
    "Time spent waiting for a rate-limiter permit.",
    buckets=(0.0, 0.1, 0.5, 1, 5, 15, 30, 60),
)

PROBES = Counter(
    "connector_probes_total",
    "Connection probes by connector type and result.",
    labelnames=("connector_type", "result"),
)


def record_sync_run(connector_type: str, state: str) -> None:
    """Increment the sync run counter with the terminal state."""

    SYNC_RUNS.labels(connector_type=connector_type, state=state).inc()


def record_sync_rejection(reason: str) -> None:
    """Increment the rejected-request counter for ``reason``."""

    SYNC_REJECTIONS.labels(reason=reason).inc()


def record_record_outcome(connector_type: str, outcome: str) -> None:
    SYNC_RECORD_OUTCOMES.labels(connector_type=connector_type, outcome=outcome).inc()


def observe_sync_duration(connector_type: str, duration_seconds: float) -> None:
    """Record the duration of a sync run in seconds."""

    SYNC_RUN_DURATION.labels(connector_type=connector_type).observe(max(duration_seconds, 0.0))


def increment_active_runs(connector_type: str) -> None:
    SYNC_ACTIVE_RUNS.labels(connector_type=connector_type).inc()


def decrement_active_runs(connector_type: str) -> None:
    SYNC_ACTIVE_RUNS.labels(connector_type=connector_type).dec()


def record_outbound_attempt(operation: str, outcome: str) -> None:
    """
    Record one outbound call attempt.

    Args:
        operation: Integration log operation (probe, sync-fetch)
        outcome: Outcome kind of the call
    """
    OUTBOUND_ATTEMPTS.labels(operation=operation, outcome=outcome).inc()


def observe_rate_limit_wait(wait_seconds: float) -> None:
    RATE_LIMIT_WAIT.observe(max(wait_seconds, 0.0))


def record_probe(connector_type: str, success: bool) -> None:
    PROBES.labels(connector_type=connector_type, result="success" if success else "failure").inc()
