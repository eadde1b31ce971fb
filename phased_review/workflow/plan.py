"""Declarative stage plans.

A StagePlan is the only per-workflow customization point: stage ids,
dependency sets, parallel-unit sources and score-gate thresholds, all
supplied as data. The engine never hardcodes stage behavior.

Ordering policy: the plan is sorted topologically. Among stages whose
dependencies are satisfied, the earliest-declared runs first, so the
declaration order is kept wherever no dependency forces otherwise. A stage
may therefore be declared before the stages it depends on.

Score gates: a ScoreGate stage names the optional stage group it guards in
``gated``. Members of that group implicitly depend on the gate, and no stage
outside the group may depend on a member, so a skipped group is never read.
"""

import heapq
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from phased_review.config import UNITS_FIELD, StageKind
from phased_review.errors import PlanError

if TYPE_CHECKING:
    from .context import StageInputView

InputBuilder = Callable[["StageInputView"], Any]


@dataclass(frozen=True)
class StageSpec:
    """Static description of one stage.

    Attributes:
        id: Unique identifier within the plan (e.g., "scenario-analysis")
        kind: How the executor dispatches the stage
        depends_on: Ids of stages whose outputs this stage reads
        input_builder: Builds the stage input from prior outputs. Sequential
            stages pass the result to the runner, Parallel stages return the
            units, Checkpoint stages return the request, ScoreGate stages
            return the score. Defaults to the run's initial input.
        output_schema: Pydantic model the runner's output must satisfy
        merge_fields: Parallel only - list fields concatenated across units.
            None merges every list field found in the unit outputs.
        concurrency_limit: Parallel only - cap on concurrently running units
        threshold: ScoreGate only - minimum score for the gated group to run
        gated: ScoreGate only - ids of the optional stage group
        description: Free-form description for logs and reports
    """

    id: str
    kind: StageKind = StageKind.SEQUENTIAL
    depends_on: frozenset[str] = field(default_factory=frozenset)
    input_builder: InputBuilder | None = None
    output_schema: type | None = None
    merge_fields: tuple[str, ...] | None = None
    concurrency_limit: int | None = None
    threshold: float | None = None
    gated: tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self):
        # Accept any iterable from callers, store immutable containers
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "gated", tuple(self.gated))
        if self.merge_fields is not None:
            object.__setattr__(self, "merge_fields", tuple(self.merge_fields))


@dataclass
class StagePlan:
    """An ordered, validated collection of stages.

    Validation runs on construction; a StagePlan that exists is well formed.
    """

    name: str
    stages: tuple[StageSpec, ...]
    aggregate_fields: tuple[str, ...] = ()
    description: str = ""

    _by_id: dict[str, StageSpec] = field(init=False, repr=False)
    _index: dict[str, int] = field(init=False, repr=False)
    _gate_of: dict[str, str] = field(init=False, repr=False)
    _dependencies: dict[str, frozenset[str]] = field(init=False, repr=False)
    _order: tuple[StageSpec, ...] = field(init=False, repr=False)
    _ancestors: dict[str, frozenset[str]] = field(init=False, repr=False)

    def __post_init__(self):
        self.stages = tuple(self.stages)
        self.aggregate_fields = tuple(self.aggregate_fields)
        self.validate()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        """Stage ids in declaration order."""
        return [stage.id for stage in self.stages]

    def get(self, stage_id: str) -> StageSpec:
        """Get a stage by id.

        Raises:
            PlanError: If the plan has no such stage
        """
        try:
            return self._by_id[stage_id]
        except KeyError:
            raise PlanError(f"Plan '{self.name}' has no stage '{stage_id}'") from None

    def declaration_index(self, stage_id: str) -> int:
        return self._index[self.get(stage_id).id]

    def gate_of(self, stage_id: str) -> str | None:
        """Id of the ScoreGate guarding this stage, if any."""
        return self._gate_of.get(stage_id)

    def dependencies(self, stage_id: str) -> frozenset[str]:
        """Declared dependencies plus the implicit dependency on a guarding gate."""
        return self._dependencies[self.get(stage_id).id]

    def ancestors(self, stage_id: str) -> frozenset[str]:
        """Every stage this stage transitively depends on."""
        return self._ancestors[self.get(stage_id).id]

    def execution_order(self) -> list[StageSpec]:
        """Stages in the order the executor visits them."""
        return list(self._order)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """Check the plan and compute its ordering.

        Raises:
            PlanError: If the plan is malformed
        """
        if not self.stages:
            raise PlanError(f"Plan '{self.name}' has no stages")

        self._by_id = {}
        self._index = {}
        for index, stage in enumerate(self.stages):
            if not isinstance(stage.id, str) or not stage.id:
                raise PlanError(f"Stage at position {index} has no id")
            if stage.id in self._by_id:
                raise PlanError(f"Duplicate stage id '{stage.id}'", stage_id=stage.id)
            self._by_id[stage.id] = stage
            self._index[stage.id] = index

        for stage in self.stages:
            self._validate_kind_options(stage)
            for dep in stage.depends_on:
                if dep == stage.id:
                    raise PlanError(f"Stage '{stage.id}' depends on itself", stage_id=stage.id)
                if dep not in self._by_id:
                    raise PlanError(
                        f"Stage '{stage.id}' depends on unknown stage '{dep}'", stage_id=stage.id
                    )

        self._gate_of = self._collect_gates()
        self._dependencies = {
            stage.id: stage.depends_on | _optional(self._gate_of.get(stage.id))
            for stage in self.stages
        }
        self._order = self._topological_order()
        self._ancestors = self._compute_ancestors()
        self._check_gated_reads()

    def _validate_kind_options(self, stage: StageSpec) -> None:
        if stage.kind == StageKind.SCORE_GATE:
            if stage.threshold is None:
                raise PlanError(f"Score gate '{stage.id}' has no threshold", stage_id=stage.id)
            if isinstance(stage.threshold, bool) or not isinstance(stage.threshold, int | float):
                raise PlanError(
                    f"Score gate '{stage.id}' threshold must be a number", stage_id=stage.id
                )
            if math.isnan(stage.threshold):
                raise PlanError(f"Score gate '{stage.id}' threshold is NaN", stage_id=stage.id)
            if not stage.gated:
                raise PlanError(f"Score gate '{stage.id}' gates no stages", stage_id=stage.id)
        elif stage.threshold is not None or stage.gated:
            raise PlanError(
                f"Stage '{stage.id}' sets threshold/gated but is not a score gate",
                stage_id=stage.id,
            )

        if stage.kind != StageKind.PARALLEL and (
            stage.concurrency_limit is not None or stage.merge_fields is not None
        ):
            raise PlanError(
                f"Stage '{stage.id}' sets parallel options but is not a parallel stage",
                stage_id=stage.id,
            )
        if stage.merge_fields is not None and UNITS_FIELD in stage.merge_fields:
            raise PlanError(
                f"Stage '{stage.id}' cannot merge reserved field '{UNITS_FIELD}'",
                stage_id=stage.id,
            )
        if stage.concurrency_limit is not None and stage.concurrency_limit < 1:
            raise PlanError(
                f"Stage '{stage.id}' concurrency_limit must be >= 1", stage_id=stage.id
            )

    def _collect_gates(self) -> dict[str, str]:
        gate_of: dict[str, str] = {}
        for stage in self.stages:
            if stage.kind != StageKind.SCORE_GATE:
                continue
            for member in stage.gated:
                if member == stage.id:
                    raise PlanError(f"Score gate '{stage.id}' gates itself", stage_id=stage.id)
                if member not in self._by_id:
                    raise PlanError(
                        f"Score gate '{stage.id}' gates unknown stage '{member}'",
                        stage_id=stage.id,
                    )
                if member in gate_of and gate_of[member] != stage.id:
                    raise PlanError(
                        f"Stage '{member}' is gated by both '{gate_of[member]}' and '{stage.id}'",
                        stage_id=member,
                    )
                gate_of[member] = stage.id
        return gate_of

    def _topological_order(self) -> tuple[StageSpec, ...]:
        """Kahn's algorithm, breaking ties by declaration index."""
        remaining = {sid: len(deps) for sid, deps in self._dependencies.items()}
        dependents: dict[str, list[str]] = {sid: [] for sid in self._by_id}
        for sid, deps in self._dependencies.items():
            for dep in deps:
                dependents[dep].append(sid)

        ready = [self._index[sid] for sid, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: list[StageSpec] = []
        while ready:
            stage = self.stages[heapq.heappop(ready)]
            order.append(stage)
            for dependent in dependents[stage.id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._index[dependent])

        if len(order) != len(self.stages):
            placed = {stage.id for stage in order}
            cyclic = [sid for sid in self.stage_ids if sid not in placed]
            raise PlanError(
                f"Plan '{self.name}' has a dependency cycle among: {', '.join(cyclic)}"
            )
        return tuple(order)

    def _compute_ancestors(self) -> dict[str, frozenset[str]]:
        ancestors: dict[str, frozenset[str]] = {}
        for stage in self._order:
            found: set[str] = set()
            for dep in self._dependencies[stage.id]:
                found.add(dep)
                found |= ancestors[dep]
            ancestors[stage.id] = frozenset(found)
        return ancestors

    def _gates_over(self, stage_id: str) -> frozenset[str]:
        """Every gate whose closed decision would skip this stage."""
        gates: set[str] = set()
        current = self._gate_of.get(stage_id)
        while current is not None:
            gates.add(current)
            current = self._gate_of.get(current)
        return frozenset(gates)

    def _check_gated_reads(self) -> None:
        for stage in self.stages:
            own_gates = self._gates_over(stage.id)
            for dep in stage.depends_on:
                extra = self._gates_over(dep) - own_gates
                if extra:
                    raise PlanError(
                        f"Stage '{stage.id}' depends on '{dep}', which may be skipped by "
                        f"score gate '{sorted(extra)[0]}'; add '{stage.id}' to that gate's group",
                        stage_id=stage.id,
                    )


def _optional(stage_id: str | None) -> frozenset[str]:
    return frozenset() if stage_id is None else frozenset({stage_id})


def build_plan(
    name: str,
    stages: Iterable[StageSpec],
    aggregate_fields: Iterable[str] = (),
    description: str = "",
) -> StagePlan:
    """Convenience constructor accepting any iterables."""
    return StagePlan(
        name=name,
        stages=tuple(stages),
        aggregate_fields=tuple(aggregate_fields),
        description=description,
    )
