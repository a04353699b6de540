from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from autopilot.context import get_correlation_id, normalize_correlation_id
from autopilot.core.config import Settings, get_settings

JOB_TRACER = "autopilot.jobs"
CRM_TRACER = "autopilot.crm"

_provider: TracerProvider | None = None
_exporters_attached = False


def _resource(service_name: str, settings: Settings) -> Resource:
    return Resource.create(
        {
            "service.name": service_name,
            "service.version": settings.app_version,
            "deployment.environment": settings.app_env,
            "autopilot.dry_run": settings.dry_run,
        }
    )


def _get_or_create_provider(service_name: str, settings: Settings) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=_resource(service_name, settings))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, settings: Settings | None = None) -> TracerProvider | None:
    """Install the process tracer provider for the API or the worker when tracing is on."""
    global _exporters_attached

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(service_name, settings)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "autopilot") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name, get_settings())
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def _tag_correlation(span: Span, correlation_id: str | None) -> None:
    value = correlation_id or get_correlation_id()
    if value:
        span.set_attribute("correlation_id", value)


@contextmanager
def job_span(job_name: str, *, job_id: str, attempt: int, correlation_id: str | None = None) -> Iterator[Span]:
    tracer = trace.get_tracer(JOB_TRACER)
    with tracer.start_as_current_span(f"autopilot.job.{job_name}") as span:
        span.set_attribute("autopilot.job_id", job_id)
        span.set_attribute("autopilot.attempt", attempt)
        _tag_correlation(span, correlation_id)
        yield span


@contextmanager
def sweep_span(job_name: str, *, run_id: int, source: str) -> Iterator[Span]:
    tracer = trace.get_tracer(JOB_TRACER)
    with tracer.start_as_current_span(f"autopilot.sweep.{job_name}") as span:
        span.set_attribute("autopilot.sweep.run_id", run_id)
        span.set_attribute("autopilot.source", source)
        _tag_correlation(span, None)
        yield span


@contextmanager
def crm_span(method: str, path: str) -> Iterator[Span]:
    tracer = trace.get_tracer(CRM_TRACER)
    with tracer.start_as_current_span("crm.request") as span:
        span.set_attribute("http.method", method)
        span.set_attribute("crm.path", path)
        _tag_correlation(span, None)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_id = normalize_correlation_id(headers.get(b"x-correlation-id"))
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
