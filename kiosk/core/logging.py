"""Logging and tracing setup for the kiosk queue service.

Every log record carries a ``queue_scope`` attribute (``registrar/reg-w1``,
``admissions/*`` or ``-`` outside queue work) so a window's history can be
followed through interleaved kiosk and staff requests.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.config import dictConfig
from typing import Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from kiosk.core.config import Settings

_NO_SCOPE = "-"
_current_scope: ContextVar[str] = ContextVar("queue_scope", default=_NO_SCOPE)
_tracer_provider: TracerProvider | None = None


class QueueScopeFilter(logging.Filter):
    """Stamp records with the queue scope of the running operation."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "queue_scope"):
            record.queue_scope = _current_scope.get()
        return True


@contextmanager
def queue_log_scope(scope: object) -> Iterator[None]:
    """Attribute log records emitted inside the block to ``scope``."""

    token = _current_scope.set(str(scope))
    try:
        yield
    finally:
        _current_scope.reset(token)


def current_queue_scope() -> str:
    return _current_scope.get()


def _parse_headers(header_string: str | None) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def configure_logging(settings: Settings) -> logging.Logger:
    """Route the ``kiosk`` loggers to stderr with queue-scope stamping."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"queue_scope": {"()": QueueScopeFilter}},
            "formatters": {"default": {"format": settings.log_format}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["queue_scope"],
                    "level": level,
                }
            },
            "root": {"handlers": ["default"], "level": level},
            "loggers": {
                "kiosk": {"level": level},
                # access lines at WARNING and above only
                "uvicorn.access": {"level": max(level, logging.WARNING)},
            },
        }
    )

    logger = logging.getLogger("kiosk")
    logger.setLevel(level)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP tracer provider when tracing is enabled."""

    global _tracer_provider

    if _tracer_provider is not None or not settings.otel_enabled:
        return None

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = _parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush and stop the tracer provider installed by :func:`init_tracer`."""

    global _tracer_provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _tracer_provider:
        _tracer_provider = None
