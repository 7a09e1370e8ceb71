"""
Royalty Engine - Tracing

OpenTelemetry spans around claim processing, notification sends and monitor
ticks. Spans are only recorded once init_tracing() has installed a provider;
before that the OpenTelemetry API returns non-recording spans.

Environment Variables:
    ROYALTY_TRACING_ENABLED=true
    ROYALTY_TRACING_EXPORTER=console  # console, none
    ROYALTY_TRACING_SERVICE_NAME=royalty-engine
    ROYALTY_TRACING_SAMPLE_RATE=1.0
"""

import functools
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import ParentBasedTraceIdRatio
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

TRACER_NAME = "royalty_engine"
TRACE_HEADER = "X-Trace-ID"

_provider: TracerProvider | None = None
_provider_lock = threading.Lock()


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "royalty-engine"
    environment: str = "development"
    exporter: str = "console"
    sample_rate: float = 1.0
    # Export spans in batches off the request thread
    batch_export: bool = True

    @classmethod
    def from_env(cls) -> "TracingConfig":
        return cls(
            enabled=os.getenv("ROYALTY_TRACING_ENABLED", "false").lower() == "true",
            service_name=os.getenv("ROYALTY_TRACING_SERVICE_NAME", "royalty-engine"),
            environment=os.getenv("ROYALTY_ENVIRONMENT", "development"),
            exporter=os.getenv("ROYALTY_TRACING_EXPORTER", "console").lower(),
            sample_rate=float(os.getenv("ROYALTY_TRACING_SAMPLE_RATE", "1.0")),
            batch_export=os.getenv("ROYALTY_TRACING_BATCH", "true").lower() == "true",
        )


def init_tracing(config: TracingConfig) -> bool:
    """
    Install a recording tracer provider.

    Only the first call has an effect. Returns True when spans are recorded.
    """
    global _provider

    with _provider_lock:
        if _provider is not None:
            return True
        if not config.enabled:
            logger.info("Tracing disabled")
            return False

        from engine import API_VERSION

        provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": config.service_name,
                    "service.version": API_VERSION,
                    "deployment.environment": config.environment,
                }
            ),
            sampler=ParentBasedTraceIdRatio(config.sample_rate),
        )
        if config.exporter == "console":
            processor_cls = BatchSpanProcessor if config.batch_export else SimpleSpanProcessor
            provider.add_span_processor(processor_cls(ConsoleSpanExporter()))
        elif config.exporter != "none":
            logger.warning(f"Unknown span exporter '{config.exporter}'; spans are dropped")

        trace.set_tracer_provider(provider)
        _provider = provider
        logger.info(
            f"Tracing enabled for {config.service_name} "
            f"(exporter={config.exporter}, sample_rate={config.sample_rate})"
        )
        return True


def shutdown_tracing() -> None:
    """Flush pending spans."""
    if _provider is not None:
        _provider.shutdown()


def traced(name: str, attributes: dict[str, Any] | None = None):
    """
    Run the wrapped function inside a span named ``name``.

    Exceptions are recorded on the span and re-raised.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            tracer = trace.get_tracer(TRACER_NAME)
            with tracer.start_as_current_span(name, attributes=attributes) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return wrapper

    return decorator


def add_span_attribute(key: str, value: Any) -> None:
    trace.get_current_span().set_attribute(key, value)


def add_trace_to_response(response):
    """Echo the active trace id on a Flask response."""
    ctx = trace.get_current_span().get_span_context()
    if ctx is not None and ctx.is_valid:
        response.headers[TRACE_HEADER] = format(ctx.trace_id, "032x")
    return response
