"""OpenTelemetry wiring for OnceOnly.

Tracing is opt-in. When ONCEONLY_OTEL_ENABLED=1, create_app instruments the
relay API and its outbound httpx calls, and TracingHook attaches coordinator
transitions to whichever span is active at the time.

Environment Variables:
    ONCEONLY_OTEL_ENABLED: "1" turns tracing on
    ONCEONLY_REQUIRE_OTEL: "1" makes a failed setup raise TracingConfigError
    ONCEONLY_OTEL_SERVICE_NAME: service.name resource attribute (default: "onceonly")
    ONCEONLY_OTEL_EXPORTER: "otlp" (gRPC) or "console" (default: "otlp")
    ONCEONLY_OTEL_EXPORTER_OTLP_ENDPOINT: collector endpoint (optional)
    ONCEONLY_OTEL_TEST_CAPTURE: "1" keeps finished spans in memory for tests

Exporters and instrumentations ship in the ``otel`` extra.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
    from opentelemetry.sdk.trace.export import SpanProcessor
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

logger = logging.getLogger(__name__)

ONCEONLY_OTEL_ENABLED_ENV = "ONCEONLY_OTEL_ENABLED"
ONCEONLY_REQUIRE_OTEL_ENV = "ONCEONLY_REQUIRE_OTEL"
ONCEONLY_OTEL_SERVICE_NAME_ENV = "ONCEONLY_OTEL_SERVICE_NAME"
ONCEONLY_OTEL_EXPORTER_ENV = "ONCEONLY_OTEL_EXPORTER"
ONCEONLY_OTEL_ENDPOINT_ENV = "ONCEONLY_OTEL_EXPORTER_OTLP_ENDPOINT"
ONCEONLY_OTEL_TEST_CAPTURE_ENV = "ONCEONLY_OTEL_TEST_CAPTURE"

_TRUTHY = frozenset({"1", "true", "yes"})


class TracingConfigError(Exception):
    """Raised when tracing setup fails and ONCEONLY_REQUIRE_OTEL=1."""


@dataclass
class _TracingState:
    # The global TracerProvider can be installed only once per process, so the
    # first successful setup is kept for the life of the process.
    provider: TracerProvider | None = None
    capture: InMemorySpanExporter | None = None


_state = _TracingState()


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


def is_tracing_enabled() -> bool:
    return _flag(ONCEONLY_OTEL_ENABLED_ENV)


def _span_processor() -> tuple[SpanProcessor, InMemorySpanExporter | None]:
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    if _flag(ONCEONLY_OTEL_TEST_CAPTURE_ENV):
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
            InMemorySpanExporter,
        )

        capture = InMemorySpanExporter()
        return SimpleSpanProcessor(capture), capture

    if os.environ.get(ONCEONLY_OTEL_EXPORTER_ENV, "otlp").strip() == "console":
        return SimpleSpanProcessor(ConsoleSpanExporter()), None

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    endpoint = os.environ.get(ONCEONLY_OTEL_ENDPOINT_ENV, "").strip() or None
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)), None


def configure_tracing() -> bool:
    """Install the OnceOnly TracerProvider if tracing is enabled.

    Safe to call repeatedly; only the first successful call installs anything.

    Returns:
        True if tracing is active after the call.

    Raises:
        TracingConfigError: If setup fails and ONCEONLY_REQUIRE_OTEL=1.
    """
    if not is_tracing_enabled():
        return False
    if _state.provider is not None:
        return True

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider

        service_name = os.environ.get(ONCEONLY_OTEL_SERVICE_NAME_ENV, "").strip() or "onceonly"
        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        processor, capture = _span_processor()
        provider.add_span_processor(processor)
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        if _flag(ONCEONLY_REQUIRE_OTEL_ENV):
            raise TracingConfigError(f"Tracing is required but setup failed: {e}") from e
        return False

    _state.provider = provider
    _state.capture = capture
    logger.info("OpenTelemetry tracing configured for service %s", service_name)
    return True


def instrument_app(app: Any) -> None:
    """Instrument the FastAPI app and outbound httpx calls when tracing is on.

    /health is excluded. Missing instrumentation packages are logged, not fatal.
    """
    if not is_tracing_enabled():
        return

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        FastAPIInstrumentor.instrument_app(app, excluded_urls="health")
        httpx_instrumentor = HTTPXClientInstrumentor()
        if not httpx_instrumentor.is_instrumented_by_opentelemetry:
            httpx_instrumentor.instrument()
    except Exception as e:
        logger.warning("OpenTelemetry instrumentation unavailable: %s", e)


def captured_spans() -> list[ReadableSpan]:
    """Finished spans held by the ONCEONLY_OTEL_TEST_CAPTURE exporter."""
    if _state.capture is None:
        return []
    return list(_state.capture.get_finished_spans())


def clear_captured_spans() -> None:
    if _state.capture is not None:
        _state.capture.clear()
