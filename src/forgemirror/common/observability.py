"""Logging and tracing setup shared by the mirror entrypoints."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .. import __version__
from .settings import MirrorSettings


SERVICE_NAME = "forgemirror"

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def add_trace_context(_logger, _method_name: str, event_dict: dict) -> dict:
    """Stamp events logged inside a span (``mirror.request``, ``mirror.upstream_fetch``) with its ids."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(span_context.span_id, "016x"))
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """One JSON object per log event, tagged with service, version and trace ids.

    Safe to call once per ``create_app``; later calls only change the level.
    """

    global _logging_configured
    numeric_level = _resolve_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name, version=__version__)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """``FORGEMIRROR_OTEL_EXPORTER_HEADERS`` uses ``key=value,key2=value2``; malformed pairs are skipped."""
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the process tracer provider on first call; later calls are no-ops.

    With no ``endpoint`` spans are kept in memory. The upstream httpx client
    is instrumented so each ``mirror.upstream_fetch`` span gets a child per attempt.
    """

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return

    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    resource = Resource.create({"service.name": service_name, "service.version": __version__})
    ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(ratio))

    if endpoint:
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    else:
        processor = SimpleSpanProcessor(InMemorySpanExporter())

    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def instrument_fastapi_app(app) -> None:
    """Server spans for the mirror routes; ``mirror.request`` nests under them."""

    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=trace.get_tracer_provider())


def configure_observability(settings: MirrorSettings, service_name: str = SERVICE_NAME) -> None:
    """Apply the logging and tracing parts of ``settings``."""

    configure_logging(service_name, settings.log_level)
    configure_tracing(
        service_name=service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
