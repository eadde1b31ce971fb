"""Error taxonomy for the phased review engine.

Every error the engine raises derives from OrchestrationError. Errors carry
the id of the stage that failed and, once they leave Executor.run(), the
RunContext as it stood at the point of failure so callers can inspect it or
resume the run from the failed stage.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from phased_review.workflow.context import RunContext


class OrchestrationError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, stage_id: str | None = None):
        super().__init__(message)
        self.stage_id = stage_id
        self.context: "RunContext | None" = None


class PlanError(OrchestrationError):
    """The plan is malformed or an input builder read something it may not."""


class RunnerFailure(OrchestrationError):
    """A stage's unit of work failed."""

    def __init__(self, stage_id: str, cause: BaseException):
        super().__init__(f"Stage '{stage_id}' failed: {cause}", stage_id=stage_id)
        self.cause = cause


class SchemaViolation(OrchestrationError):
    """A stage produced output that does not satisfy its output contract."""

    def __init__(self, stage_id: str, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(
            f"Stage '{stage_id}' produced invalid output: {message}", stage_id=stage_id
        )
        self.errors = errors or []


class FanOutError(OrchestrationError):
    """One unit of a Parallel stage failed, so the whole stage failed.

    Attributes:
        unit_index: Submission index of the failing unit
        unit_id: Identifier of the failing unit
        cause: The unit's original error
        failure_count: How many units failed before the join completed
    """

    def __init__(
        self,
        stage_id: str,
        unit_index: int,
        unit_id: str,
        cause: BaseException,
        failure_count: int = 1,
    ):
        super().__init__(
            f"Stage '{stage_id}' unit {unit_index} ({unit_id}) failed: {cause}",
            stage_id=stage_id,
        )
        self.unit_index = unit_index
        self.unit_id = unit_id
        self.cause = cause
        self.failure_count = failure_count


class CheckpointRejected(OrchestrationError):
    """The approver rejected a checkpoint."""

    def __init__(self, stage_id: str, reason: str | None = None):
        message = f"Checkpoint '{stage_id}' rejected"
        if reason:
            message += f": {reason}"
        super().__init__(message, stage_id=stage_id)
        self.reason = reason


class CheckpointTimeout(OrchestrationError):
    """No resolution arrived before the checkpoint timeout."""

    def __init__(self, stage_id: str, timeout: float):
        super().__init__(
            f"Checkpoint '{stage_id}' received no resolution within {timeout:g}s",
            stage_id=stage_id,
        )
        self.timeout = timeout


class RunCancelled(OrchestrationError):
    """The run was cancelled through its cancellation token."""
