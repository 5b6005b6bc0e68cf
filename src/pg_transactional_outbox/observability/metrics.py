"""
OpenTelemetry Metrics

Counters for relayed, retried and abandoned messages and for
subscription restarts. Without `init_metrics` the OpenTelemetry API
records into a no-op provider.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

logger = logging.getLogger(__name__)

METER_NAME = "pg_transactional_outbox"

COUNTERS = {
    "outbox.messages.relayed": "Outbox messages handed to the delivery callback",
    "outbox.messages.failed": "Outbox deliveries that failed and were not acknowledged",
    "inbox.messages.processed": "Inbox messages processed and acknowledged",
    "inbox.messages.retried": "Inbox messages scheduled for another attempt",
    "inbox.messages.abandoned": "Inbox messages abandoned after exceeding the retry budget",
    "replication.subscription.restarts": "Subscription restarts after an error",
}

HISTOGRAMS = {
    "message.handling.duration": "Time spent in the message callback",
}

_meter: Optional[metrics.Meter] = None
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = "pg-transactional-outbox",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize an OpenTelemetry SDK meter provider.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint (e.g., "http://localhost:4317")
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds

    Returns:
        Configured meter
    """
    global _meter

    readers = []

    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: OTLP exporter configured -> %s", otlp_endpoint)

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))

    resource = Resource.create({SERVICE_NAME: service_name})
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    _meter = metrics.get_meter(METER_NAME)
    _counters.clear()
    _histograms.clear()
    logger.info("OTel metrics initialized: %s", service_name)
    return _meter


def get_meter() -> metrics.Meter:
    """Get the package meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME)
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Optional[Dict[str, Any]] = None
) -> None:
    """Record a counter metric. Unknown names are ignored."""
    if name not in COUNTERS:
        return
    counter = _counters.get(name)
    if counter is None:
        counter = get_meter().create_counter(name, description=COUNTERS[name], unit="1")
        _counters[name] = counter
    counter.add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Optional[Dict[str, Any]] = None
) -> None:
    """Record a histogram metric. Unknown names are ignored."""
    if name not in HISTOGRAMS:
        return
    histogram = _histograms.get(name)
    if histogram is None:
        histogram = get_meter().create_histogram(name, description=HISTOGRAMS[name], unit="s")
        _histograms[name] = histogram
    histogram.record(value, attributes or {})
