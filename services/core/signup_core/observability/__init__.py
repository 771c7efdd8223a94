"""Observability package for logging and metrics."""

from signup_core.observability.logging import (
    JsonFormatter,
    RunContext,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from signup_core.observability.metrics import MetricsCollector, get_collector

__all__ = [
    "StructuredLogger",
    "JsonFormatter",
    "RunContext",
    "get_logger",
    "configure_logging",
    "MetricsCollector",
    "get_collector",
]
