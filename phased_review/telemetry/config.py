"""Telemetry configuration and initialization.

This module handles:
- Reading telemetry configuration from environment variables
- Setting up Python logging with appropriate levels
- Initializing an OpenTelemetry tracer provider and its exporter
"""

import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)

# Global state
_telemetry_initialized = False
_tracer_provider: TracerProvider | None = None


class ExporterType(Enum):
    """Supported trace exporters."""

    OTLP = "otlp"
    CONSOLE = "console"
    NONE = "none"


@dataclass
class TelemetryConfig:
    """Configuration for logging and tracing.

    All values are read from environment variables with sensible defaults.
    """

    # Logging
    log_level: str = "INFO"

    # OpenTelemetry
    service_name: str = "phased-review"
    otlp_endpoint: str = "http://localhost:4317"
    traces_exporter: ExporterType = ExporterType.NONE
    otel_disabled: bool = False

    @classmethod
    def from_env(cls) -> "TelemetryConfig":
        """Create config from environment variables."""
        exporter_str = os.getenv("OTEL_TRACES_EXPORTER", "none").lower()
        try:
            exporter = ExporterType(exporter_str)
        except ValueError:
            logger.warning(f"Unknown exporter type '{exporter_str}', defaulting to none")
            exporter = ExporterType.NONE

        otel_disabled = os.getenv("OTEL_SDK_DISABLED", "false").lower() in ("true", "1", "yes")

        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            service_name=os.getenv("OTEL_SERVICE_NAME", "phased-review"),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"),
            traces_exporter=exporter,
            otel_disabled=otel_disabled,
        )


def _setup_logging(config: TelemetryConfig) -> None:
    """Configure Python logging based on config.

    Installs a single console handler on the root logger with the
    structured ``time | level | logger | message`` format.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    level = level_map.get(config.log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("phased_review").setLevel(level)

    if level > logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("grpc").setLevel(logging.WARNING)

    logger.info(f"Logging configured: level={config.log_level}")


def _setup_tracing(config: TelemetryConfig) -> TracerProvider | None:
    """Install a global tracer provider with the configured exporter."""
    if config.otel_disabled:
        logger.info("OpenTelemetry disabled via OTEL_SDK_DISABLED")
        return None

    resource = Resource.create({SERVICE_NAME: config.service_name})
    provider = TracerProvider(resource=resource)

    if config.traces_exporter == ExporterType.OTLP:
        # Lazy import: the gRPC exporter pulls in grpcio
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        logger.info(f"OTLP exporter configured: endpoint={config.otlp_endpoint}")

    elif config.traces_exporter == ExporterType.CONSOLE:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console exporter configured")

    # ExporterType.NONE - spans are created but not exported

    trace.set_tracer_provider(provider)
    return provider


def init_telemetry(config: TelemetryConfig | None = None) -> None:
    """Initialize logging and tracing.

    Call once at application startup, before running any plan.

    Args:
        config: Optional configuration. If not provided, reads from environment.
    """
    global _telemetry_initialized, _tracer_provider

    if _telemetry_initialized:
        logger.debug("Telemetry already initialized, skipping")
        return

    if config is None:
        config = TelemetryConfig.from_env()

    _setup_logging(config)
    _tracer_provider = _setup_tracing(config)

    _telemetry_initialized = True
    logger.info(
        f"Telemetry initialized: service={config.service_name}, "
        f"exporter={config.traces_exporter.value}, "
        f"otel_disabled={config.otel_disabled}"
    )


def shutdown_telemetry() -> None:
    """Flush pending spans and reset the telemetry state."""
    global _telemetry_initialized, _tracer_provider

    if not _telemetry_initialized:
        return

    if _tracer_provider is not None:
        _tracer_provider.shutdown()

    _telemetry_initialized = False
    _tracer_provider = None
    logger.info("Telemetry shutdown complete")


def is_telemetry_enabled() -> bool:
    """Check if telemetry is initialized and tracing is enabled."""
    return _telemetry_initialized and _tracer_provider is not None


def get_telemetry_config() -> TelemetryConfig:
    """Get the current telemetry configuration."""
    return TelemetryConfig.from_env()
