"""Fan-out / fan-in for Parallel stages.

Every unit of a Parallel stage is dispatched to the StageRunner
concurrently and the stage is a barrier: nothing else happens until every
unit has completed or failed. The join is all-or-nothing. On success the
named list fields of each unit output are concatenated in submission
order, never completion order, so aggregation is reproducible whatever the
scheduling.
"""

import copy
import logging
import time
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from phased_review.config import DEFAULT_ARTIFACT_FIELD, UNITS_FIELD
from phased_review.errors import FanOutError, PlanError, RunCancelled, SchemaViolation

from .cancellation import CancellationToken
from .stage_runner import StageRunner, validate_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParallelUnit:
    """One independent item submitted to a Parallel stage."""

    unit_id: str
    payload: Any


@dataclass(frozen=True)
class AggregatedResult:
    """Merged outputs of a Parallel stage.

    Attributes:
        units: Validated unit outputs in submission order
        merged: Field name -> concatenation of that field across units
    """

    units: tuple[Any, ...]
    merged: dict[str, list[Any]] = field(default_factory=dict)

    def to_output(self) -> dict[str, Any]:
        """Stage output recorded in the RunContext."""
        output: dict[str, Any] = {UNITS_FIELD: list(self.units)}
        for name, values in self.merged.items():
            output[name] = list(values)
        return output


def to_units(stage_id: str, items: Any) -> list[ParallelUnit]:
    """Normalize what a Parallel stage's input builder returned.

    Plain payloads are wrapped in ParallelUnits with positional ids.

    Raises:
        PlanError: If the builder did not return a sequence of units
    """
    if isinstance(items, str | bytes | Mapping) or not isinstance(items, Iterable):
        raise PlanError(
            f"Parallel stage '{stage_id}' input builder must return a sequence of units, "
            f"got {type(items).__name__}",
            stage_id=stage_id,
        )

    units = []
    for index, item in enumerate(items):
        if isinstance(item, ParallelUnit):
            units.append(item)
        else:
            units.append(ParallelUnit(unit_id=f"{stage_id}[{index}]", payload=item))

    seen: set[str] = set()
    for unit in units:
        if unit.unit_id in seen:
            raise PlanError(
                f"Parallel stage '{stage_id}' has duplicate unit id '{unit.unit_id}'",
                stage_id=stage_id,
            )
        seen.add(unit.unit_id)
    return units


class FanOutAggregator:
    """Runs the units of one Parallel stage and merges their outputs."""

    def __init__(self, runner: StageRunner, cancel_token: CancellationToken | None = None):
        self.runner = runner
        self.cancel_token = cancel_token

    def run_parallel(
        self,
        stage_id: str,
        units: Iterable[ParallelUnit],
        limit: int | None = None,
        output_schema: type | None = None,
        merge_fields: Iterable[str] | None = None,
        artifact_field: str = DEFAULT_ARTIFACT_FIELD,
    ) -> AggregatedResult:
        """Run every unit concurrently and merge their outputs.

        Args:
            stage_id: Parallel stage the units belong to
            units: Units in submission order
            limit: Maximum concurrently running units (None = all at once)
            output_schema: Contract each unit output must satisfy
            merge_fields: List fields to concatenate; None merges all list fields
            artifact_field: Always merged when present so artifacts survive

        Returns:
            AggregatedResult in submission order

        Raises:
            FanOutError: If any unit failed (wraps the first failure seen)
            RunCancelled: If the run was cancelled before the join completed
        """
        units = list(units)
        if merge_fields is not None:
            merge_fields = tuple(merge_fields)
        if merge_fields is not None and UNITS_FIELD in merge_fields:
            raise PlanError(
                f"Parallel stage '{stage_id}' cannot merge reserved field '{UNITS_FIELD}'",
                stage_id=stage_id,
            )
        if not units:
            logger.info(f"Parallel stage {stage_id}: no units submitted")
            return AggregatedResult(units=(), merged={name: [] for name in merge_fields or ()})

        max_workers = min(limit, len(units)) if limit else len(units)
        logger.info(
            f"Parallel stage {stage_id}: dispatching {len(units)} units (max_workers={max_workers})"
        )

        start_time = time.time()
        results: list[Any] = [None] * len(units)
        failures: list[tuple[int, BaseException]] = []

        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"fan-out-{stage_id}"
        ) as executor:
            futures = {
                executor.submit(self._run_unit, stage_id, unit, output_schema): index
                for index, unit in enumerate(units)
            }

            for future in as_completed(futures):
                index = futures[future]
                if future.cancelled():
                    continue
                try:
                    results[index] = future.result()
                    logger.debug(f"Parallel stage {stage_id}: unit {units[index].unit_id} done")
                except Exception as e:
                    failures.append((index, e))
                    logger.error(
                        f"Parallel stage {stage_id}: unit {units[index].unit_id} failed: {e}",
                        extra={"stage": stage_id, "error_type": type(e).__name__},
                    )
                    if len(failures) == 1:
                        # Units that have not started yet are abandoned
                        for pending in futures:
                            pending.cancel()

        if failures:
            index, cause = failures[0]
            if isinstance(cause, RunCancelled):
                raise cause
            raise FanOutError(
                stage_id,
                unit_index=index,
                unit_id=units[index].unit_id,
                cause=cause,
                failure_count=len(failures),
            ) from cause

        merged = _merge(stage_id, results, merge_fields, artifact_field)
        logger.info(
            f"Parallel stage {stage_id}: joined {len(units)} units in "
            f"{time.time() - start_time:.2f}s"
        )
        return AggregatedResult(units=tuple(results), merged=merged)

    def _run_unit(self, stage_id: str, unit: ParallelUnit, output_schema: type | None) -> Any:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled(stage_id)
        # Units never share payload objects with each other or with the RunContext
        raw = self.runner.invoke(stage_id, copy.deepcopy(unit.payload), output_schema)
        return validate_output(stage_id, raw, output_schema)


def _merge(
    stage_id: str,
    outputs: list[Any],
    merge_fields: Iterable[str] | None,
    artifact_field: str,
) -> dict[str, list[Any]]:
    """Concatenate list fields across unit outputs in submission order."""
    if merge_fields is None:
        names: list[str] = []
        for output in outputs:
            if isinstance(output, Mapping):
                for name, value in output.items():
                    if isinstance(value, list) and name != UNITS_FIELD and name not in names:
                        names.append(name)
    else:
        names = list(merge_fields)
        if artifact_field not in names and any(
            isinstance(output, Mapping) and artifact_field in output for output in outputs
        ):
            names.append(artifact_field)

    merged: dict[str, list[Any]] = {name: [] for name in names}
    for index, output in enumerate(outputs):
        if not isinstance(output, Mapping):
            continue
        for name in names:
            value = output.get(name)
            if value is None:
                continue
            if not isinstance(value, list):
                raise SchemaViolation(
                    stage_id, f"unit {index} field '{name}' is {type(value).__name__}, not a list"
                )
            merged[name].extend(value)
    return merged
