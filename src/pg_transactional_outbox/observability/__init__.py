"""
Observability Module

Structured logging and OpenTelemetry metrics.
"""

from .logging import StructuredFormatter, configure_logging, disable_logging
from .metrics import init_metrics, get_meter, record_counter, record_histogram

__all__ = [
    # Logging
    "StructuredFormatter",
    "configure_logging",
    "disable_logging",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
]
