"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, log_context
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    record_event,
    get_metrics_snapshot,
    track_batch_progress,
    clear_batch_progress,
)
from .health import check_database_health, check_batch_runner_health

__all__ = [
    "configure_logging",
    "log_context",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "record_event",
    "get_metrics_snapshot",
    "track_batch_progress",
    "clear_batch_progress",
    "check_database_health",
    "check_batch_runner_health",
]
