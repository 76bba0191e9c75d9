#!/usr/bin/env python3
"""
OpenTelemetry tracing for conversion runs.

`init_telemetry` installs a tracer provider, instruments the aiohttp client
so every page, feed and Linkding request gets its own span, and stamps
trace ids onto log records. Finished spans stay in-process unless console
export is requested.

Environment variables:
  - OTEL_SERVICE_NAME (default: linkding-opml)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stderr
  - DISABLE_TELEMETRY=true to fully disable
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import sys
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

DEFAULT_SERVICE_NAME = "linkding-opml"

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def _resource(service_name: str) -> Resource:
    attrs = {"service.name": service_name}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attrs["deployment.environment"] = environment
    return Resource.create(attrs)


def _instrument_libraries() -> None:
    try:
        AioHttpClientInstrumentor().instrument()
    except Exception as e:
        _logger.debug("aiohttp instrumentation unavailable: %s", e)
    try:
        LoggingInstrumentor().instrument(set_logging_format=False)
    except Exception as e:
        _logger.debug("logging instrumentation unavailable: %s", e)


def init_telemetry(service_name: Optional[str] = None) -> Optional[TracerProvider]:
    """Install tracing once per process and return the active SDK provider.

    Returns None when DISABLE_TELEMETRY=true. A provider installed earlier
    (for example by opentelemetry-instrument) is reused rather than replaced.
    """
    global _provider
    if _env_flag("DISABLE_TELEMETRY"):
        return None

    with _init_lock:
        if _provider is not None:
            return _provider

        name = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        current = trace.get_tracer_provider()
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=_resource(name))

        if _env_flag("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
        if provider is not current:
            trace.set_tracer_provider(provider)

        _instrument_libraries()
        # Batched spans must be flushed before a short CLI run exits
        atexit.register(provider.shutdown)
        _provider = provider
        _logger.debug(
            "Telemetry initialized (service=%s, console_export=%s)",
            name, _env_flag("OTEL_CONSOLE_EXPORT"),
        )
        return provider


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def _apply_attributes(span: Span, attrs: Dict[str, Any]) -> None:
    for key, value in attrs.items():
        if value is not None:
            span.set_attribute(key, value)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run a coroutine function inside an OpenTelemetry span.

    Args:
        span_name: Span name (defaults to module.function)
        tracer_name: Tracer name (defaults to the function's module)
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's arguments; returns extra
                        span attributes

    Exceptions are recorded on the span and re-raised unchanged.
    """

    def _decorator(func: Callable[..., Awaitable[Any]]):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"trace_span only wraps coroutine functions, got {func.__qualname__}")
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = tracer_name or func.__module__

        @functools.wraps(func)
        async def _traced(*args, **kwargs):
            with get_tracer(tracer).start_as_current_span(
                name, record_exception=False, set_status_on_exception=False
            ) as span:
                if span.is_recording():
                    _apply_attributes(span, static_attrs or {})
                    if attr_from_args is not None:
                        try:
                            _apply_attributes(span, attr_from_args(*args, **kwargs) or {})
                        except Exception as e:
                            # Attribute extraction never breaks the wrapped call
                            _logger.debug("Failed to set span attributes for %s: %s", name, e)
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if span.is_recording():
                        span.record_exception(e)
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise

        return _traced

    return _decorator
