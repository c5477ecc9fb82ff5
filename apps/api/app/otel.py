from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import get_settings


_exporters_installed = False
_provider: TracerProvider | None = None


def _tracer_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.namespace": settings.app_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        # The global provider can be set only once per process.
        trace.set_tracer_provider(_provider)
    return _provider


def _span_processors_from_env() -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the tracer provider and the exporters named by the environment, once."""

    global _exporters_installed

    if not enable:
        return None

    provider = _tracer_provider(service_name)
    if not _exporters_installed:
        for processor in _span_processors_from_env():
            provider.add_span_processor(processor)
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        if "/quotations" in scope.get("path", ""):
            span.set_attribute("greenex.domain", "quotations")

    return server_request_hook
