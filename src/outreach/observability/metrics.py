"""Prometheus metrics instrumentation for the outreach engine.

Provides:
- ``setup_metrics(app)``: Attach prometheus-fastapi-instrumentator to a FastAPI app,
  exposing ``/metrics`` with HTTP request duration/count plus custom business metrics.
- ``COMMANDS_PROCESSED``: Counter of command bus outcomes.
- ``TASK_TRANSITIONS``: Counter of persisted task transitions by target status.
- ``TICK_RUNS``: Counter of scheduler ticks by HTTP outcome.
- ``OPEN_THREADS``: Gauge of non-terminal tasks, refreshed at the end of each tick.

Business metrics are updated where the state change is persisted (not by
polling the database).
"""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import Counter, Gauge
from prometheus_fastapi_instrumentator import Instrumentator

COMMANDS_PROCESSED: Counter = Counter(
    "outreach_commands_processed_total",
    "Command bus outcomes (completed, retried, dead_letter, deferred, suppressed)",
    ["command_type", "outcome"],
)

TASK_TRANSITIONS: Counter = Counter(
    "outreach_task_transitions_total",
    "Persisted task status transitions by target status",
    ["status"],
)

TICK_RUNS: Counter = Counter(
    "outreach_tick_runs_total",
    "Scheduler tick invocations by result (ok, partial, failed)",
    ["result"],
)

OPEN_THREADS: Gauge = Gauge(
    "outreach_open_threads",
    "Number of currently non-terminal outreach tasks",
)


def setup_metrics(app: FastAPI) -> None:
    """Instrument *app* with Prometheus HTTP metrics and expose ``/metrics``.

    Excludes health/ready/metrics endpoints from instrumentation to avoid
    noise in dashboards.

    Args:
        app: The FastAPI application to instrument.
    """
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/ready", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, should_gzip=True)
