"""OpenTelemetry setup for the membership API and spans around membership work."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

from rac_rewards_api.core.settings import Settings, get_settings

_TRACER_NAME = "rac_rewards_api.membership"
_PROVIDER: TracerProvider | None = None


def _otlp_headers(raw: str | None) -> Dict[str, str] | None:
    if not raw:
        return None
    pairs = (item.partition("=") for item in raw.split(","))
    headers = {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}
    return headers or None


def _exporter_for(config: Settings) -> SpanExporter:
    if config.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=config.otel_exporter_otlp_endpoint,
            headers=_otlp_headers(config.otel_exporter_otlp_headers),
        )
    return ConsoleSpanExporter()


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
    exporter: SpanExporter | None = None,
) -> None:
    """Install the tracer provider once per process and instrument ``app``.

    With ``tracing_enabled`` off and no explicit exporter the app is still
    instrumented against the global no-op provider, so ``membership_span``
    stays cheap in tests and local runs.
    """

    global _PROVIDER

    config = get_settings()
    if _PROVIDER is None and (config.tracing_enabled or exporter is not None):
        _PROVIDER = TracerProvider(
            resource=Resource.create(
                {
                    ResourceAttributes.SERVICE_NAME: service_name,
                    ResourceAttributes.SERVICE_VERSION: service_version,
                    ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
                }
            )
        )
        _PROVIDER.add_span_processor(BatchSpanProcessor(exporter or _exporter_for(config)))
        trace.set_tracer_provider(_PROVIDER)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_PROVIDER or trace.get_tracer_provider())


@contextmanager
def membership_span(operation: str, **attributes: Any) -> Iterator[trace.Span]:
    """Span named ``membership.<operation>``; ``None`` attributes are dropped."""

    tracer = trace.get_tracer(_TRACER_NAME)
    clean = {f"membership.{key}": str(value) for key, value in attributes.items() if value is not None}
    with tracer.start_as_current_span(f"membership.{operation}", attributes=clean) as span:
        yield span


__all__ = ["configure_tracing", "membership_span"]
