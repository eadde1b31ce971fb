"""Custom span creation for run and stage-level tracing.

Span Hierarchy:
    run_span (root)
    └── stage_span (per stage)
        └── spans created by the StageRunner (LLM calls, tools, ...)

When no tracer provider has been installed, the OpenTelemetry API hands
out non-recording spans, so these helpers are safe to call unconditionally.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, StatusCode

logger = logging.getLogger(__name__)

_TRACER_NAME = "phased_review.workflow"


def get_tracer() -> trace.Tracer:
    """Get the OpenTelemetry tracer for engine spans."""
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def run_span(
    plan_name: str,
    run_id: str,
    stage_count: int,
    **attributes: Any,
) -> Generator[Span, None, None]:
    """Create the root span for one run of a plan.

    Args:
        plan_name: Name of the plan being executed
        run_id: Identifier of the run
        stage_count: Number of stages in the plan
        **attributes: Additional span attributes

    Yields:
        The OpenTelemetry span
    """
    span_attributes = {
        "run.plan": plan_name,
        "run.id": run_id,
        "run.stage_count": stage_count,
    }
    span_attributes.update(attributes)

    with _status_span(f"run:{plan_name}", span_attributes) as span:
        yield span


@contextmanager
def stage_span(
    stage_id: str,
    stage_kind: str,
    depends_on: list[str] | None = None,
    **attributes: Any,
) -> Generator[Span, None, None]:
    """Create a span for a stage execution.

    Should be called within a run_span so stages nest under their run.

    Example:
        with stage_span("scenario-analysis", "parallel") as span:
            span.set_attribute("stage.unit_count", 5)
    """
    span_attributes: dict[str, Any] = {
        "stage.id": stage_id,
        "stage.kind": stage_kind,
    }
    if depends_on:
        span_attributes["stage.depends_on"] = ",".join(depends_on)
    span_attributes.update(attributes)

    with _status_span(f"stage:{stage_id}", span_attributes) as span:
        yield span


@contextmanager
def _status_span(name: str, attributes: dict[str, Any]) -> Generator[Span, None, None]:
    with get_tracer().start_as_current_span(
        name=name,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
            span.set_status(StatusCode.OK)
        except Exception as e:
            record_error(span, e)
            raise


def record_stage_event(span: Span, event_name: str, **attributes: Any) -> None:
    """Record an event within a stage span.

    Args:
        span: The span to add the event to
        event_name: Name of the event (e.g., "checkpoint_requested")
        **attributes: Event attributes
    """
    span.add_event(event_name, attributes=attributes)


def record_error(span: Span, error: Exception) -> None:
    """Record an error to a span with structured attributes."""
    error_message = str(error)

    span.set_attribute("error", True)
    span.set_attribute("error.type", type(error).__name__)
    span.set_attribute("error.message", error_message[:500])

    stage_id = getattr(error, "stage_id", None)
    if stage_id:
        span.set_attribute("error.stage", stage_id)

    span.record_exception(error)
    span.set_status(StatusCode.ERROR, error_message[:100])
