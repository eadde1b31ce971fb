"""Tests for telemetry configuration and engine spans.

Spans are captured with the OpenTelemetry SDK's in-memory exporter; the
global tracer provider is never replaced.
"""

from unittest import mock

import pytest
from conftest import gate, seq
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from phased_review.errors import PlanError
from phased_review.telemetry import (
    ExporterType,
    TelemetryConfig,
    init_telemetry,
    is_telemetry_enabled,
    run_span,
    shutdown_telemetry,
    stage_span,
)
from phased_review.telemetry.config import _setup_tracing
from phased_review.workflow.executor import Executor
from phased_review.workflow.plan import build_plan
from phased_review.workflow.stage_runner import FunctionStageRunner

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def exporter():
    """Route engine spans to an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    with mock.patch(
        "phased_review.telemetry.spans.get_tracer",
        return_value=provider.get_tracer("test"),
    ):
        yield exporter
    provider.shutdown()


def _span(exporter, name):
    return next(span for span in exporter.get_finished_spans() if span.name == name)


# =============================================================================
# TelemetryConfig
# =============================================================================


class TestTelemetryConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "LOG_LEVEL",
            "OTEL_SERVICE_NAME",
            "OTEL_TRACES_EXPORTER",
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            "OTEL_SDK_DISABLED",
        ):
            monkeypatch.delenv(name, raising=False)

        config = TelemetryConfig.from_env()

        assert config.log_level == "INFO"
        assert config.service_name == "phased-review"
        assert config.traces_exporter == ExporterType.NONE
        assert config.otel_disabled is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("OTEL_TRACES_EXPORTER", "Console")
        monkeypatch.setenv("OTEL_SDK_DISABLED", "yes")

        config = TelemetryConfig.from_env()

        assert config.log_level == "DEBUG"
        assert config.traces_exporter == ExporterType.CONSOLE
        assert config.otel_disabled is True

    def test_unknown_exporter(self, monkeypatch):
        monkeypatch.setenv("OTEL_TRACES_EXPORTER", "zipkin")
        assert TelemetryConfig.from_env().traces_exporter == ExporterType.NONE


class TestSetupTracing:
    def test_disabled(self):
        assert _setup_tracing(TelemetryConfig(otel_disabled=True)) is None

    @mock.patch("phased_review.telemetry.config.trace.set_tracer_provider")
    def test_installs_provider(self, mock_set):
        provider = _setup_tracing(TelemetryConfig(traces_exporter=ExporterType.CONSOLE))
        try:
            mock_set.assert_called_once_with(provider)
            assert isinstance(provider, TracerProvider)
            assert provider.resource.attributes["service.name"] == "phased-review"
        finally:
            provider.shutdown()


class TestInitTelemetry:
    @mock.patch("phased_review.telemetry.config._setup_tracing")
    @mock.patch("phased_review.telemetry.config._setup_logging")
    def test_init_once_then_shutdown(self, mock_logging, mock_tracing):
        mock_tracing.return_value = mock.Mock()
        try:
            init_telemetry(TelemetryConfig())
            init_telemetry(TelemetryConfig())

            mock_logging.assert_called_once()
            assert is_telemetry_enabled() is True
        finally:
            shutdown_telemetry()

        mock_tracing.return_value.shutdown.assert_called_once()
        assert is_telemetry_enabled() is False


# =============================================================================
# Spans
# =============================================================================


class TestSpans:
    def test_stage_nested_under_run(self, exporter):
        with run_span("review", "r1", 2):
            with stage_span("a", "sequential", ["x", "y"]):
                pass

        run = _span(exporter, "run:review")
        stage = _span(exporter, "stage:a")
        assert stage.parent.span_id == run.context.span_id
        assert run.attributes["run.id"] == "r1"
        assert stage.attributes["stage.depends_on"] == "x,y"
        assert stage.status.status_code == StatusCode.OK

    def test_error_recorded(self, exporter):
        with pytest.raises(PlanError):
            with stage_span("a", "sequential"):
                raise PlanError("bad input", stage_id="a")

        stage = _span(exporter, "stage:a")
        assert stage.status.status_code == StatusCode.ERROR
        assert stage.attributes["error.type"] == "PlanError"
        assert stage.attributes["error.stage"] == "a"

    def test_executor_emits_stage_events(self, exporter, engine_config):
        plan = build_plan(
            "p",
            [
                seq("score"),
                gate(
                    "g",
                    "score",
                    threshold=85,
                    gated=("roadmap",),
                    input_builder=lambda view: view.output("score"),
                ),
                seq("roadmap"),
            ],
        )
        runner = FunctionStageRunner({"score": lambda p: 90, "roadmap": lambda p: {}})

        Executor(runner, config=engine_config).run(plan)

        names = [span.name for span in exporter.get_finished_spans()]
        assert names == ["stage:score", "stage:g", "stage:roadmap", "run:p"]
        event = _span(exporter, "stage:g").events[0]
        assert event.name == "score_decided"
        assert event.attributes["proceed"] is True
