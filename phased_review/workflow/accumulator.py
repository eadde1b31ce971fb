"""Run record assembly.

ResultAccumulator.fold() is a pure transformation from a RunContext to a
RunRecord. The record is a detached snapshot: its fields cannot be
reassigned, and every output, aggregate and decision in it is a copy, so
changing the record never reaches the context and folding the same context
twice yields identical records.
"""

import copy
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from phased_review.config import StageKind, StageStatus

from .context import ArtifactRef, RunContext
from .plan import StagePlan
from .score_gate import ScoreDecision


class StageRecord(BaseModel):
    """One stage's entry in the run record."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    kind: StageKind
    status: StageStatus
    output: Any = None


class RunRecord(BaseModel):
    """Terminal aggregate of a run, returned to the caller.

    A detached snapshot rather than a deeply immutable value: fields cannot be
    reassigned, but the dicts and lists inside belong to the caller.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    plan_name: str
    stages: tuple[StageRecord, ...] = ()
    artifacts: tuple[ArtifactRef, ...] = ()
    aggregates: dict[str, list[Any]] = Field(default_factory=dict)
    totals: dict[str, int] = Field(default_factory=dict)
    decisions: dict[str, ScoreDecision] = Field(default_factory=dict)

    def stage(self, stage_id: str) -> StageRecord:
        for record in self.stages:
            if record.stage_id == stage_id:
                return record
        raise KeyError(stage_id)

    def output(self, stage_id: str) -> Any:
        return self.stage(stage_id).output

    @property
    def skipped(self) -> list[str]:
        return [r.stage_id for r in self.stages if r.status == StageStatus.SKIPPED]


class ResultAccumulator:
    """Folds a RunContext into a RunRecord."""

    def __init__(self, plan: StagePlan):
        self.plan = plan

    def fold(self, context: RunContext) -> RunRecord:
        """Build the run record.

        Stage entries follow the order stages were processed. Aggregates
        concatenate each of the plan's ``aggregate_fields`` across stages in
        declaration order, so the risks of every parallel stage end up in
        one list.
        """
        stages = []
        for stage_id in context.processed_stages:
            spec = self.plan.get(stage_id)
            if context.is_skipped(stage_id):
                stages.append(
                    StageRecord(stage_id=stage_id, kind=spec.kind, status=StageStatus.SKIPPED)
                )
            else:
                stages.append(
                    StageRecord(
                        stage_id=stage_id,
                        kind=spec.kind,
                        status=StageStatus.COMPLETED,
                        output=copy.deepcopy(context.output(stage_id)),
                    )
                )

        aggregates: dict[str, list[Any]] = {name: [] for name in self.plan.aggregate_fields}
        decisions: dict[str, ScoreDecision] = {}
        for spec in self.plan.stages:
            if not context.has_output(spec.id):
                continue
            output = context.output(spec.id)
            if spec.kind == StageKind.SCORE_GATE:
                decisions[spec.id] = ScoreDecision.model_validate(output)
            if not isinstance(output, Mapping):
                continue
            for name in self.plan.aggregate_fields:
                value = output.get(name)
                if isinstance(value, list):
                    aggregates[name].extend(copy.deepcopy(value))

        return RunRecord(
            run_id=context.run_id,
            plan_name=self.plan.name,
            stages=tuple(stages),
            artifacts=context.artifacts,
            aggregates=aggregates,
            totals={f"total_{name}": len(values) for name, values in aggregates.items()},
            decisions=decisions,
        )
