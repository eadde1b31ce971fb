"""Telemetry and observability for the phased review engine.

Usage:
    from phased_review.telemetry import init_telemetry, stage_span

    # Initialize once at startup
    init_telemetry()

    with stage_span("utility-tree", "sequential") as span:
        span.set_attribute("stage.custom_metric", 3)

Environment Variables:
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR) - default: INFO
    OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint - default: http://localhost:4317
    OTEL_SERVICE_NAME: Service name for traces - default: phased-review
    OTEL_TRACES_EXPORTER: Exporter type (otlp, console, none) - default: none
    OTEL_SDK_DISABLED: Disable tracing - default: false
"""

from .config import (
    ExporterType,
    TelemetryConfig,
    get_telemetry_config,
    init_telemetry,
    is_telemetry_enabled,
    shutdown_telemetry,
)
from .spans import (
    get_tracer,
    record_error,
    record_stage_event,
    run_span,
    stage_span,
)

__all__ = [
    # Configuration
    "ExporterType",
    "TelemetryConfig",
    "get_telemetry_config",
    "init_telemetry",
    "shutdown_telemetry",
    "is_telemetry_enabled",
    # Spans
    "get_tracer",
    "run_span",
    "stage_span",
    "record_stage_event",
    "record_error",
]
