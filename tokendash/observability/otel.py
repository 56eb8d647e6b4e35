"""OpenTelemetry + Prometheus fallback wiring for the tokendash backend.

Everything here is a no-op until ``initialize`` runs with
``TOKENDASH_OTEL_ENABLED`` set; the exporters are optional dependencies.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from tokendash import config

logger = logging.getLogger("tokendash.observability")

# name -> (kind, description, prometheus label names)
_INSTRUMENTS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "tokendash_ingested_files_total": ("counter", "Count of log files ingested by result", ("result", "project")),
    "tokendash_ingestion_latency_ms": ("histogram", "Latency for per-file ingestion", ("result", "project")),
    "tokendash_parser_failures_total": ("counter", "Count of log lines or records that failed to ingest", ("stage", "project")),
    "tokendash_tokens_total": ("counter", "Ingested token totals by model and direction", ("model", "direction", "project")),
}

_initialized = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint or endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[:-3]
    return f"{endpoint}{signal_path}"


def _clean(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _setup_otel(app: FastAPI | None) -> bool:
    global _tracer, _fastapi_instrumentor
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
        return False

    service_name = config.OTEL_SERVICE_NAME or "tokendash-backend"
    resource = Resource.create({"service.name": service_name, "service.namespace": "tokendash"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(
        OTLPSpanExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None)
    ))
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("tokendash.backend")

    for name, (kind, description, _labels) in _INSTRUMENTS.items():
        if kind == "counter":
            _otel_instruments[name] = meter.create_counter(name, unit="1", description=description)
        else:
            _otel_instruments[name] = meter.create_histogram(name, unit="ms", description=description)

    _providers.extend([meter_provider, trace_provider])
    _tracer = trace.get_tracer("tokendash.backend")
    _fastapi_instrumentor = FastAPIInstrumentor()
    if app:
        _fastapi_instrumentor.instrument_app(app)
    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)
    return True


def _setup_prometheus() -> None:
    if config.PROM_PORT <= 0:
        return
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        for name, (kind, description, labels) in _INSTRUMENTS.items():
            factory = Counter if kind == "counter" else Histogram
            _prom_instruments[name] = factory(name, description, list(labels))
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_instruments.clear()


def initialize(app: FastAPI | None = None) -> None:
    global _initialized
    if _initialized:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (TOKENDASH_OTEL_ENABLED=false)")
        return
    if _setup_otel(app):
        _setup_prometheus()


def shutdown(app: FastAPI | None = None) -> None:
    global _tracer
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception:
            logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    while _providers:
        provider = _providers.pop(0)
        try:
            provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    _otel_instruments.clear()
    _tracer = None


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, amount: float, labels: dict[str, str]) -> None:
    otel = _otel_instruments.get(name)
    prom = _prom_instruments.get(name)
    is_counter = _INSTRUMENTS[name][0] == "counter"
    if otel is not None:
        if is_counter:
            otel.add(amount, labels)
        else:
            otel.record(amount, labels)
    if prom is not None:
        child = prom.labels(**labels)
        if is_counter:
            child.inc(amount)
        else:
            child.observe(amount)


def record_ingestion(result: str, duration_ms: float, *, project: str) -> None:
    labels = {"result": _clean(result), "project": _clean(project)}
    _emit("tokendash_ingested_files_total", 1, labels)
    _emit("tokendash_ingestion_latency_ms", max(0.0, float(duration_ms)), labels)


def record_parser_failure(stage: str, *, project: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count:
        _emit("tokendash_parser_failures_total", safe_count, {"stage": _clean(stage), "project": _clean(project)})


def record_token_usage(*, project: str, model: str, token_input: int, token_output: int) -> None:
    base = {"model": _clean(model), "project": _clean(project)}
    for direction, amount in (("input", token_input), ("output", token_output)):
        tokens = max(0, int(amount))
        if tokens:
            _emit("tokendash_tokens_total", tokens, {**base, "direction": direction})
