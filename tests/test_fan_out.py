"""Tests for phased_review.workflow.fan_out.

Covers deterministic merging in submission order, all-or-nothing failure,
concurrency limits, schema validation per unit, payload isolation and
cancellation.
"""

import threading
import time

import pytest
from pydantic import BaseModel

from phased_review.errors import (
    FanOutError,
    PlanError,
    RunCancelled,
    RunnerFailure,
    SchemaViolation,
)
from phased_review.workflow.cancellation import CancellationToken
from phased_review.workflow.fan_out import (
    AggregatedResult,
    FanOutAggregator,
    ParallelUnit,
    to_units,
)
from phased_review.workflow.stage_runner import FunctionStageRunner

# =============================================================================
# Helpers
# =============================================================================


class Finding(BaseModel):
    scenario: str
    risks: list[str] = []


def _units(*payloads) -> list[ParallelUnit]:
    return to_units("analysis", list(payloads))


def _slow_first_runner(completed: list | None = None) -> FunctionStageRunner:
    """Earlier units sleep longer, so completion order is the reverse of submission."""

    def analyze(payload):
        time.sleep(0.05 * (4 - payload["n"]))
        if completed is not None:
            completed.append(payload["n"])
        return {"scenario": f"s{payload['n']}", "risks": [f"r{payload['n']}a", f"r{payload['n']}b"]}

    return FunctionStageRunner({"analysis": analyze})


# =============================================================================
# to_units
# =============================================================================


class TestToUnits:
    """Normalization of input builder results."""

    def test_wraps_plain_payloads(self):
        units = to_units("analysis", ["x", "y"])
        assert units == [
            ParallelUnit(unit_id="analysis[0]", payload="x"),
            ParallelUnit(unit_id="analysis[1]", payload="y"),
        ]

    def test_keeps_explicit_units(self):
        unit = ParallelUnit(unit_id="QA-1", payload={})
        assert to_units("analysis", [unit]) == [unit]

    @pytest.mark.parametrize("value", ["abc", {"a": 1}, 42, None])
    def test_rejects_non_sequences(self, value):
        with pytest.raises(PlanError, match="must return a sequence of units"):
            to_units("analysis", value)

    def test_rejects_duplicate_unit_ids(self):
        units = [ParallelUnit("QA-1", 1), ParallelUnit("QA-1", 2)]
        with pytest.raises(PlanError, match="duplicate unit id 'QA-1'"):
            to_units("analysis", units)


# =============================================================================
# Merging
# =============================================================================


class TestDeterministicMerge:
    """Fan-in order is submission order, never completion order."""

    def test_merges_in_submission_order(self):
        runner = _slow_first_runner()
        result = FanOutAggregator(runner).run_parallel(
            "analysis", _units({"n": 1}, {"n": 2}, {"n": 3}), merge_fields=["risks"]
        )

        assert result.merged["risks"] == ["r1a", "r1b", "r2a", "r2b", "r3a", "r3b"]
        assert [u["scenario"] for u in result.units] == ["s1", "s2", "s3"]

    def test_completion_order_differs_from_submission(self):
        """Sanity check that the runner really completes units out of order."""
        completed: list[int] = []
        runner = _slow_first_runner(completed)
        result = FanOutAggregator(runner).run_parallel(
            "analysis", _units({"n": 1}, {"n": 2}, {"n": 3})
        )
        assert completed == [3, 2, 1]
        assert [u["scenario"] for u in result.units] == ["s1", "s2", "s3"]

    def test_merges_every_list_field_by_default(self):
        runner = FunctionStageRunner(
            {"analysis": lambda p: {"risks": [p], "tradeoffs": [p * 10], "note": "x"}}
        )
        result = FanOutAggregator(runner).run_parallel("analysis", _units(1, 2))
        assert result.merged == {"risks": [1, 2], "tradeoffs": [10, 20]}

    def test_artifacts_always_merged(self):
        runner = FunctionStageRunner(
            {"analysis": lambda p: {"risks": [], "artifacts": [{"path": f"{p}.md"}]}}
        )
        result = FanOutAggregator(runner).run_parallel(
            "analysis", _units("a", "b"), merge_fields=["risks"]
        )
        assert result.merged["artifacts"] == [{"path": "a.md"}, {"path": "b.md"}]

    def test_to_output(self):
        result = AggregatedResult(units=({"risks": [1]},), merged={"risks": [1]})
        assert result.to_output() == {"units": [{"risks": [1]}], "risks": [1]}

    def test_units_field_never_auto_merged(self):
        runner = FunctionStageRunner({"analysis": lambda p: {"units": [p], "risks": [p]}})
        result = FanOutAggregator(runner).run_parallel("analysis", _units(1, 2))

        assert result.merged == {"risks": [1, 2]}
        assert result.to_output()["units"] == [
            {"units": [1], "risks": [1]},
            {"units": [2], "risks": [2]},
        ]

    def test_units_field_cannot_be_merged(self):
        runner = FunctionStageRunner({"analysis": lambda p: {"units": [p]}})
        with pytest.raises(PlanError, match="reserved field 'units'"):
            FanOutAggregator(runner).run_parallel("analysis", _units(1), merge_fields=["units"])
        assert runner.calls == []

    def test_non_list_merge_field(self):
        runner = FunctionStageRunner({"analysis": lambda p: {"risks": "oops"}})
        with pytest.raises(SchemaViolation, match="not a list"):
            FanOutAggregator(runner).run_parallel("analysis", _units(1), merge_fields=["risks"])

    def test_empty_unit_list(self):
        runner = FunctionStageRunner({})
        result = FanOutAggregator(runner).run_parallel("analysis", [], merge_fields=["risks"])
        assert result.units == ()
        assert result.merged == {"risks": []}

    def test_validates_against_schema(self):
        runner = FunctionStageRunner(
            {"analysis": lambda p: Finding(scenario=p, risks=[p.upper()])}
        )
        result = FanOutAggregator(runner).run_parallel(
            "analysis", _units("a", "b"), output_schema=Finding, merge_fields=["risks"]
        )
        assert result.units == ({"scenario": "a", "risks": ["A"]}, {"scenario": "b", "risks": ["B"]})
        assert result.merged["risks"] == ["A", "B"]


# =============================================================================
# Failure
# =============================================================================


class TestAllOrNothing:
    """Any unit failure fails the whole stage with no partial result."""

    def test_unit_failure_raises_fan_out_error(self):
        def analyze(payload):
            if payload == 3:
                raise RuntimeError("scenario 3 exploded")
            return {"risks": [payload]}

        runner = FunctionStageRunner({"analysis": analyze})
        with pytest.raises(FanOutError) as exc_info:
            FanOutAggregator(runner).run_parallel("analysis", _units(1, 2, 3, 4, 5))

        error = exc_info.value
        assert error.stage_id == "analysis"
        assert error.unit_index == 2
        assert error.unit_id == "analysis[2]"
        assert isinstance(error.cause, RuntimeError)
        assert error.__cause__ is error.cause
        assert error.failure_count == 1

    def test_schema_violation_in_unit_is_wrapped(self):
        runner = FunctionStageRunner({"analysis": lambda p: {"risks": []}})
        with pytest.raises(FanOutError) as exc_info:
            FanOutAggregator(runner).run_parallel("analysis", _units("a"), output_schema=Finding)
        assert isinstance(exc_info.value.cause, SchemaViolation)

    def test_runner_failure_in_unit_is_wrapped(self):
        def analyze(payload):
            if payload == 3:
                raise RunnerFailure("analysis", ConnectionError("model endpoint unreachable"))
            return {"risks": [payload]}

        runner = FunctionStageRunner({"analysis": analyze})
        with pytest.raises(FanOutError) as exc_info:
            FanOutAggregator(runner).run_parallel("analysis", _units(1, 2, 3, 4, 5))

        assert exc_info.value.unit_index == 2
        assert isinstance(exc_info.value.cause, RunnerFailure)

    def test_pending_units_abandoned_after_failure(self):
        def analyze(payload):
            if payload == 0:
                raise RuntimeError("boom")
            time.sleep(0.02)
            return {}

        runner = FunctionStageRunner({"analysis": analyze})
        with pytest.raises(FanOutError) as exc_info:
            FanOutAggregator(runner).run_parallel("analysis", _units(*range(20)), limit=1)
        assert exc_info.value.unit_index == 0
        # With one worker, the queued units are cancelled once unit 0 fails
        assert runner.call_count("analysis") < 20


# =============================================================================
# Isolation
# =============================================================================


class TestUnitIsolation:
    """Units never see each other's changes to shared payload objects."""

    def test_shared_payload_objects_are_copied(self):
        shared = ["x"]

        def analyze(payload):
            payload["items"].append(payload["n"])
            return {"seen": list(payload["items"])}

        runner = FunctionStageRunner({"analysis": analyze})
        result = FanOutAggregator(runner).run_parallel(
            "analysis", _units({"n": 1, "items": shared}, {"n": 2, "items": shared}), limit=1
        )

        assert [u["seen"] for u in result.units] == [["x", 1], ["x", 2]]
        assert shared == ["x"]


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrencyLimit:
    """The limit caps concurrently running units."""

    @staticmethod
    def _tracking_runner():
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def analyze(payload):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1
            return {"risks": [payload]}

        return FunctionStageRunner({"analysis": analyze}), state

    def test_limit_respected(self):
        runner, state = self._tracking_runner()
        result = FanOutAggregator(runner).run_parallel("analysis", _units(*range(8)), limit=2)
        assert state["peak"] <= 2
        assert result.merged["risks"] == list(range(8))

    def test_unbounded_runs_concurrently(self):
        barrier = threading.Barrier(4, timeout=5)

        def analyze(payload):
            barrier.wait()
            return {}

        runner = FunctionStageRunner({"analysis": analyze})
        # Deadlocks (and times out the barrier) unless all four run at once
        FanOutAggregator(runner).run_parallel("analysis", _units(1, 2, 3, 4))
        assert runner.call_count("analysis") == 4


# =============================================================================
# Cancellation
# =============================================================================


class TestFanOutCancellation:
    def test_cancelled_token_stops_units(self):
        token = CancellationToken()
        token.cancel("user abort")
        runner = FunctionStageRunner({"analysis": lambda p: {}})

        with pytest.raises(RunCancelled, match="user abort"):
            FanOutAggregator(runner, token).run_parallel("analysis", _units(1, 2))
        assert runner.calls == []
