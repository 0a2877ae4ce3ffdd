"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging
from .metrics import (
    increment_counter,
    observe_latency,
    record_event,
    get_counter_value,
    get_metrics_snapshot,
    reset_metrics,
)
from .health import check_database_health, check_payment_gateway_config

__all__ = [
    "configure_logging",
    "increment_counter",
    "observe_latency",
    "record_event",
    "get_counter_value",
    "get_metrics_snapshot",
    "reset_metrics",
    "check_database_health",
    "check_payment_gateway_config",
]
