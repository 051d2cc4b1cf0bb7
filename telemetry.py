#!/usr/bin/env python3
"""
OpenTelemetry wiring for the reader pipeline.

Spans cover outbound aiohttp requests, sqlite access and the pipeline stages
(relay fetch, feed parse, article load, filter discovery). Nothing is exported
unless OTEL_CONSOLE_EXPORT=true, in which case finished spans go to stdout.

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-reader)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans
  - DISABLE_TELEMETRY=true to skip setup entirely
"""

from __future__ import annotations

import asyncio
import atexit
import functools
import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

DEFAULT_SERVICE = "feed-reader"

_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def _build_provider(service: str) -> tuple[TracerProvider, bool]:
    """Return the provider to use and whether it was created here."""
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        # Someone (auto-instrumentation, a test harness) got there first
        return current, False
    attributes = {"service.name": service}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attributes["deployment.environment"] = environment
    return TracerProvider(resource=Resource.create(attributes)), True


def _instrument_libraries() -> None:
    # LoggingInstrumentor adds otelTraceID/otelSpanID to log records
    for instrumentor in (AioHttpClientInstrumentor, LoggingInstrumentor, SQLite3Instrumentor):
        try:
            instrumentor().instrument()
        except Exception as exc:
            _logger.debug("Skipping %s: %s", instrumentor.__name__, exc)


def _shutdown_provider() -> None:
    if _provider is None:
        return
    try:
        _provider.shutdown()
    except Exception as exc:
        _logger.debug("Tracer provider shutdown failed: %s", exc)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Set up tracing once per process. A no-op when DISABLE_TELEMETRY=true."""
    global _provider
    if _flag("DISABLE_TELEMETRY") or _provider is not None:
        return
    with _lock:
        if _provider is not None:
            return
        service = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE)
        provider, created = _build_provider(service)

        if _flag("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Tracing %s with console span export", service)
        else:
            _logger.debug("Tracing %s without an exporter", service)

        if created:
            trace.set_tracer_provider(provider)
        _provider = provider
        _instrument_libraries()
        # Short CLI runs would otherwise drop buffered spans
        atexit.register(_shutdown_provider)


def get_tracer(name: str = DEFAULT_SERVICE):
    return trace.get_tracer(name)


@contextmanager
def _span(tracer, name: str, attributes: dict):
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes. A failure there is logged and ignored so tracing can never
    change what the wrapped call does. Exceptions raised by the call itself
    are recorded on the span and re-raised.
    """

    def decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE)

        def attributes(args, kwargs) -> dict:
            collected = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    collected.update(attr_from_args(*args, **kwargs) or {})
                except Exception as exc:
                    _logger.debug("Span attributes for %s unavailable: %s", name, exc)
            return collected

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _span(tracer, name, attributes(args, kwargs)):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with _span(tracer, name, attributes(args, kwargs)):
                return func(*args, **kwargs)

        return wrapper

    return decorator
