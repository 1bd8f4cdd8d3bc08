"""OpenTelemetry + Prometheus fallback wiring for the loopdash backend.

Both stacks are optional; every ``record_*`` helper is a no-op until
``initialize`` has wired at least one of them.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from loopdash import config

logger = logging.getLogger("loopdash.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_parse_failure_counter: Any | None = None
_broadcast_counter: Any | None = None
_rotation_counter: Any | None = None
_rotation_purged_counter: Any | None = None
_subscription_counter: Any | None = None

_prom_enabled = False
_prom_parse_failure_counter: Any | None = None
_prom_broadcast_counter: Any | None = None
_prom_rotation_counter: Any | None = None
_prom_rotation_purged_counter: Any | None = None
_prom_subscription_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_parse_failure_counter, _prom_broadcast_counter
    global _prom_rotation_counter, _prom_rotation_purged_counter, _prom_subscription_counter

    try:
        from prometheus_client import Counter, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_parse_failure_counter = Counter(
            "loopdash_parse_failures_total",
            "Count of log or state-file lines that could not be decoded",
            ["parser"],
        )
        _prom_broadcast_counter = Counter(
            "loopdash_broadcast_messages_total",
            "Live messages delivered to or dropped for subscribers",
            ["kind", "result"],
        )
        _prom_rotation_counter = Counter(
            "loopdash_rotations_total",
            "Event log rotation attempts",
            ["result"],
        )
        _prom_rotation_purged_counter = Counter(
            "loopdash_rotation_purged_entries_total",
            "Event log entries removed by rotation",
        )
        _prom_subscription_counter = Counter(
            "loopdash_subscriptions_total",
            "Live subscription requests by admission result",
            ["result"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _parse_failure_counter, _broadcast_counter
    global _rotation_counter, _rotation_purged_counter, _subscription_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (LOOPDASH_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "loopdash-backend"

    resource = Resource.create({"service.name": service_name, "service.namespace": "loopdash"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("loopdash.backend")

    _parse_failure_counter = meter.create_counter(
        "loopdash_parse_failures_total",
        unit="1",
        description="Count of log or state-file lines that could not be decoded",
    )
    _broadcast_counter = meter.create_counter(
        "loopdash_broadcast_messages_total",
        unit="1",
        description="Live messages delivered to or dropped for subscribers",
    )
    _rotation_counter = meter.create_counter(
        "loopdash_rotations_total",
        unit="1",
        description="Event log rotation attempts",
    )
    _rotation_purged_counter = meter.create_counter(
        "loopdash_rotation_purged_entries_total",
        unit="1",
        description="Event log entries removed by rotation",
    )
    _subscription_counter = meter.create_counter(
        "loopdash_subscriptions_total",
        unit="1",
        description="Live subscription requests by admission result",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("loopdash.backend")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_parse_failure(parser: str) -> None:
    labels = {"parser": _label(parser)}
    if _enabled and _parse_failure_counter is not None:
        _parse_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parse_failure_counter is not None:
        _prom_parse_failure_counter.labels(**labels).inc()


def record_broadcast(kind: str, delivered: int, dropped: int = 0) -> None:
    for result, count in (("delivered", delivered), ("dropped", dropped)):
        safe_count = max(0, int(count))
        if safe_count == 0:
            continue
        labels = {"kind": _label(kind), "result": result}
        if _enabled and _broadcast_counter is not None:
            _broadcast_counter.add(safe_count, labels)
        if _prom_enabled and _prom_broadcast_counter is not None:
            _prom_broadcast_counter.labels(**labels).inc(safe_count)


def record_rotation(purged: int, *, refused: bool = False) -> None:
    labels = {"result": "refused" if refused else "rotated"}
    safe_purged = max(0, int(purged))
    if _enabled and _rotation_counter is not None:
        _rotation_counter.add(1, labels)
    if _enabled and _rotation_purged_counter is not None and safe_purged > 0:
        _rotation_purged_counter.add(safe_purged)
    if _prom_enabled and _prom_rotation_counter is not None:
        _prom_rotation_counter.labels(**labels).inc()
    if _prom_enabled and _prom_rotation_purged_counter is not None and safe_purged > 0:
        _prom_rotation_purged_counter.inc(safe_purged)


def record_subscription(result: str) -> None:
    labels = {"result": _label(result)}
    if _enabled and _subscription_counter is not None:
        _subscription_counter.add(1, labels)
    if _prom_enabled and _prom_subscription_counter is not None:
        _prom_subscription_counter.labels(**labels).inc()
