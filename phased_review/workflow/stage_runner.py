"""The StageRunner boundary.

A StageRunner is the external capability that does a stage's actual work
(in production, an LLM agent call). The engine only needs:

    invoke(stage_id, payload, output_schema) -> output

and treats ``output_schema`` as an opaque validation contract. Output that
does not satisfy the contract is a SchemaViolation, kept distinct from a
RunnerFailure so callers can tell "the analysis failed" from "the analysis
produced garbage".
"""

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from phased_review.errors import SchemaViolation

logger = logging.getLogger(__name__)


@runtime_checkable
class StageRunner(Protocol):
    """Executes one stage (or one parallel unit) given its resolved input."""

    def invoke(self, stage_id: str, payload: Any, output_schema: type | None) -> Any:
        """Run the stage and return its raw output, raising on failure."""
        ...


class FunctionStageRunner:
    """StageRunner that dispatches to a plain callable per stage id.

    Useful for programmatic stages that need no agent, and for tests.
    Every invocation is recorded in ``calls`` as ``(stage_id, payload)``.

    Example:
        runner = FunctionStageRunner({
            "quality-score": lambda payload: {"score": 91},
        })
    """

    def __init__(self, handlers: Mapping[str, Callable[[Any], Any]]):
        self.handlers = dict(handlers)
        self.calls: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def invoke(self, stage_id: str, payload: Any, output_schema: type | None) -> Any:
        handler = self.handlers.get(stage_id)
        if handler is None:
            raise LookupError(f"No handler registered for stage '{stage_id}'")
        with self._lock:
            self.calls.append((stage_id, payload))
        return handler(payload)

    def call_count(self, stage_id: str) -> int:
        with self._lock:
            return sum(1 for sid, _ in self.calls if sid == stage_id)


def validate_output(stage_id: str, output: Any, output_schema: type | None) -> Any:
    """Check a runner's output against the stage's output contract.

    Outputs are normalized to plain data so the RunContext only ever holds
    JSON-compatible values. A JSON string is validated with
    ``model_validate_json`` (agents usually return text).

    Args:
        stage_id: Stage that produced the output
        output: Raw runner output
        output_schema: Pydantic model class, or None for no contract

    Returns:
        The validated output as plain data

    Raises:
        SchemaViolation: If the output does not satisfy the contract
    """
    if output_schema is None:
        if isinstance(output, BaseModel):
            return output.model_dump(mode="json")
        return output

    if not (isinstance(output_schema, type) and issubclass(output_schema, BaseModel)):
        raise SchemaViolation(
            stage_id, f"output schema {output_schema!r} is not a pydantic model"
        )

    try:
        if isinstance(output, output_schema):
            model = output
        elif isinstance(output, str | bytes):
            model = output_schema.model_validate_json(output)
        elif isinstance(output, BaseModel):
            model = output_schema.model_validate(output.model_dump())
        else:
            model = output_schema.model_validate(output)
    except ValidationError as e:
        logger.warning(f"Stage {stage_id}: output failed {output_schema.__name__} validation")
        raise SchemaViolation(
            stage_id,
            f"{e.error_count()} validation error(s) for {output_schema.__name__}",
            errors=e.errors(include_url=False),
        ) from e

    return model.model_dump(mode="json")
