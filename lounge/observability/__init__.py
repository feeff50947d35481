"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, log_payment_debug
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    track_latency,
    record_event,
    get_metrics_snapshot,
)
from .health import check_database_health, check_payment_providers

__all__ = [
    "configure_logging",
    "log_payment_debug",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "track_latency",
    "record_event",
    "get_metrics_snapshot",
    "check_database_health",
    "check_payment_providers",
]
