from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from homefeed.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
# Health probes and API docs are not traced.
UNTRACED_ROUTES = "healthz,docs,openapi.json"
_INVALID_TRACE_ID = "0" * 32
_INVALID_SPAN_ID = "0" * 16

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    app_instrumented: bool = False


def configure_api_logging(settings: Settings) -> None:
    """Install trace-aware log records and a root handler if none exists yet."""
    if settings.otel_log_correlation:
        _install_log_correlation()
    else:
        # The shared format still references the ids.
        _install_log_correlation(blank=True)
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        logger.info("tracing disabled for service=%s", settings.otel_service_name)
        return TelemetryRuntime(enabled=False, provider=None)

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_VERSION: settings.app_version,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_ROUTES)
    return TelemetryRuntime(enabled=True, provider=provider, app_instrumented=True)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.app_instrumented:
        FastAPIInstrumentor.uninstrument_app(app)
        runtime.app_instrumented = False
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()
    runtime.provider = None


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; feed spans stay in-process")
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by commas, dropping malformed ones."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _install_log_correlation(*, blank: bool = False) -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = (_INVALID_TRACE_ID, _INVALID_SPAN_ID) if blank else current_trace_ids()
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True


def current_trace_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _INVALID_TRACE_ID, _INVALID_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")
