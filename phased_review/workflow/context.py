"""Run context: the single source of truth for one run's progress.

RunContext is an append-only mapping from stage id to output, backed by an
immutable Burr State that is replaced on every write. It is owned by one
Executor for the lifetime of a run and never shared between runs. Units of a
Parallel stage never touch it; the aggregator's merged result is written
once, after the join.

Input builders do not receive the RunContext itself but a StageInputView
that only exposes copies of the outputs of the stage's declared ancestors.
"""

import copy
import logging
import uuid
from collections.abc import Iterable
from typing import Any

from burr.core import State
from pydantic import BaseModel, ConfigDict, Field

from phased_review.config import DEFAULT_ARTIFACT_FORMAT
from phased_review.errors import PlanError

logger = logging.getLogger(__name__)


class ArtifactRef(BaseModel):
    """Reference to a file produced by a stage (report, JSON export, ...)."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="Location of the artifact")
    format: str = Field(
        default=DEFAULT_ARTIFACT_FORMAT, description="Artifact format (markdown, json, ...)"
    )
    label: str | None = Field(default=None, description="Optional human-readable label")


class RunContext:
    """Append-only record of stage outputs and artifacts for a single run."""

    def __init__(self, run_id: str | None = None, initial_input: Any = None):
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.initial_input = initial_input
        self._state = State({})
        self._processed: list[str] = []
        self._skipped: set[str] = set()
        self._artifacts: list[ArtifactRef] = []

    def __repr__(self) -> str:
        return (
            f"RunContext(run_id={self.run_id!r}, completed={len(self.completed_stages)}, "
            f"skipped={len(self._skipped)})"
        )

    # -------------------------------------------------------------------------
    # Writes (Executor only)
    # -------------------------------------------------------------------------

    def record(self, stage_id: str, output: Any, artifacts: Iterable[ArtifactRef] = ()) -> None:
        """Record a stage's output and the artifacts it produced.

        Raises:
            PlanError: If the stage was already recorded or skipped
        """
        self._ensure_unwritten(stage_id)
        self._state = self._state.update(**{stage_id: output})
        self._processed.append(stage_id)
        self._artifacts.extend(artifacts)

    def mark_skipped(self, stage_id: str) -> None:
        """Record that a closed score gate skipped this stage."""
        self._ensure_unwritten(stage_id)
        self._skipped.add(stage_id)
        self._processed.append(stage_id)

    def _ensure_unwritten(self, stage_id: str) -> None:
        if self.is_done(stage_id):
            raise PlanError(f"Stage '{stage_id}' was already recorded", stage_id=stage_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def has_output(self, stage_id: str) -> bool:
        return stage_id in self._state

    def is_skipped(self, stage_id: str) -> bool:
        return stage_id in self._skipped

    def is_done(self, stage_id: str) -> bool:
        """True once a stage has either produced output or been skipped."""
        return self.has_output(stage_id) or self.is_skipped(stage_id)

    def output(self, stage_id: str) -> Any:
        """Get a recorded output.

        Raises:
            PlanError: If the stage has not produced output
        """
        if self.is_skipped(stage_id):
            raise PlanError(f"Stage '{stage_id}' was skipped by its score gate", stage_id=stage_id)
        if not self.has_output(stage_id):
            raise PlanError(f"Stage '{stage_id}' has not run yet", stage_id=stage_id)
        return self._state[stage_id]

    @property
    def outputs(self) -> dict[str, Any]:
        """Snapshot of every recorded output keyed by stage id."""
        return dict(self._state.get_all())

    @property
    def processed_stages(self) -> tuple[str, ...]:
        """Completed and skipped stage ids in the order they were processed."""
        return tuple(self._processed)

    @property
    def completed_stages(self) -> tuple[str, ...]:
        return tuple(sid for sid in self._processed if sid not in self._skipped)

    @property
    def skipped_stages(self) -> tuple[str, ...]:
        return tuple(sid for sid in self._processed if sid in self._skipped)

    @property
    def artifacts(self) -> tuple[ArtifactRef, ...]:
        return tuple(self._artifacts)


class StageInputView:
    """What an input builder is allowed to see.

    Reads are limited to the stage's ancestors in the plan, so a builder
    cannot depend on execution timing: the result is the same whatever
    order unrelated stages happened to run in.
    """

    def __init__(self, context: RunContext, stage_id: str, readable: frozenset[str]):
        self._context = context
        self.stage_id = stage_id
        self._readable = readable

    @property
    def initial_input(self) -> Any:
        return self._context.initial_input

    @property
    def run_id(self) -> str:
        return self._context.run_id

    @property
    def artifacts(self) -> tuple[ArtifactRef, ...]:
        return self._context.artifacts

    def output(self, stage_id: str) -> Any:
        """Get a copy of the output of a stage this stage depends on.

        Builders may change the returned value freely; the recorded output
        stays as the stage produced it.

        Raises:
            PlanError: If stage_id is not an ancestor or has not run yet
        """
        if stage_id not in self._readable:
            raise PlanError(
                f"Stage '{self.stage_id}' reads '{stage_id}', which is not one of its dependencies",
                stage_id=self.stage_id,
            )
        return copy.deepcopy(self._context.output(stage_id))

    def __getitem__(self, stage_id: str) -> Any:
        return self.output(stage_id)
