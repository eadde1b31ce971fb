"""Tests for human approval checkpoints.

Covers CheckpointRequest rendering, approval channels, the CheckpointGate
timeout policies, and the executor blocking at a checkpoint until a
resolution arrives from another thread.
"""

import threading
from unittest import mock

import pytest
from conftest import checkpoint, seq

from phased_review.config import AUTO_APPROVE_REASON, EngineConfig, TimeoutPolicy
from phased_review.errors import CheckpointRejected, CheckpointTimeout, PlanError, RunCancelled
from phased_review.workflow.cancellation import CancellationToken
from phased_review.workflow.checkpoint import (
    CallbackApprovalChannel,
    CheckpointGate,
    CheckpointRequest,
    QueueApprovalChannel,
    Resolution,
)
from phased_review.workflow.context import ArtifactRef
from phased_review.workflow.executor import Executor
from phased_review.workflow.plan import build_plan
from phased_review.workflow.stage_runner import FunctionStageRunner

# =============================================================================
# Helpers
# =============================================================================


def _request(**overrides) -> CheckpointRequest:
    fields = {
        "stage_id": "review",
        "question": "Proceed to scoring?",
        "title": "Findings Ready",
    }
    fields.update(overrides)
    return CheckpointRequest(**fields)


def _review_plan():
    return build_plan(
        "review",
        [
            seq("analysis", output_schema=None),
            checkpoint(
                "review",
                "analysis",
                input_builder=lambda view: {
                    "question": "Proceed?",
                    "title": "Analysis Complete",
                    "summary": {"risks": len(view.output("analysis")["risks"])},
                },
            ),
            seq("report", "review", input_builder=lambda view: view.output("review")["edits"]),
        ],
    )


def _review_runner() -> FunctionStageRunner:
    return FunctionStageRunner(
        {
            "analysis": lambda payload: {
                "risks": ["r1", "r2"],
                "artifacts": [{"path": "analysis.md"}],
            },
            "report": lambda payload: {"report": "done", "edits_seen": payload},
        }
    )


# =============================================================================
# Request / Resolution
# =============================================================================


class TestCheckpointRequest:
    def test_to_markdown(self):
        request = _request(
            summary={"risks": 3},
            artifact_refs=[ArtifactRef(path="findings.json", format="json", label="Findings")],
        )
        markdown = request.to_markdown()

        assert markdown.startswith("## Findings Ready\n")
        assert "Proceed to scoring?" in markdown
        assert "- **risks:** 3" in markdown
        assert "- `findings.json` [json] (Findings)" in markdown

    def test_to_markdown_minimal(self):
        assert _request().to_markdown() == "## Findings Ready\n\nProceed to scoring?\n"


class TestResolution:
    def test_approve(self):
        resolution = Resolution.approve()
        assert resolution.approved is True
        assert resolution.edits == {}

    def test_reject(self):
        resolution = Resolution.reject("not convincing")
        assert resolution.approved is False
        assert resolution.reason == "not convincing"

    def test_edit_is_an_approval(self):
        resolution = Resolution.edit(reason="tweaked", priority="security")
        assert resolution.approved is True
        assert resolution.edits == {"priority": "security"}


# =============================================================================
# CheckpointGate
# =============================================================================


class TestCheckpointGate:
    def test_approval_returned(self):
        gate = CheckpointGate(CallbackApprovalChannel(lambda r: Resolution.approve("ok")))
        assert gate.checkpoint(_request()).reason == "ok"

    def test_callback_receives_request(self):
        callback = mock.Mock(return_value=Resolution.approve())
        request = _request()
        CheckpointGate(CallbackApprovalChannel(callback)).checkpoint(request)
        callback.assert_called_once_with(request)

    def test_rejection_raises(self):
        gate = CheckpointGate(CallbackApprovalChannel(lambda r: Resolution.reject("nope")))
        with pytest.raises(CheckpointRejected, match="nope") as exc_info:
            gate.checkpoint(_request())
        assert exc_info.value.stage_id == "review"
        assert exc_info.value.reason == "nope"

    def test_timeout_aborts_by_default(self):
        gate = CheckpointGate(QueueApprovalChannel(poll_interval=0.01), timeout=0.05)
        with pytest.raises(CheckpointTimeout) as exc_info:
            gate.checkpoint(_request())
        assert exc_info.value.timeout == 0.05

    def test_timeout_auto_approves_under_approve_policy(self):
        gate = CheckpointGate(
            QueueApprovalChannel(poll_interval=0.01),
            timeout=0.05,
            timeout_policy=TimeoutPolicy.APPROVE,
        )
        resolution = gate.checkpoint(_request())
        assert resolution.approved is True
        assert resolution.reason == AUTO_APPROVE_REASON

    def test_cancellation_while_waiting(self):
        token = CancellationToken()
        channel = QueueApprovalChannel(poll_interval=0.01)
        gate = CheckpointGate(channel, cancel_token=token)

        timer = threading.Timer(0.05, token.cancel, args=("shutting down",))
        timer.start()
        try:
            with pytest.raises(RunCancelled, match="shutting down"):
                gate.checkpoint(_request())
        finally:
            timer.cancel()
        assert channel.pending is None


# =============================================================================
# QueueApprovalChannel
# =============================================================================


class TestQueueApprovalChannel:
    def test_resolve_without_pending_request(self):
        with pytest.raises(RuntimeError, match="No checkpoint is pending"):
            QueueApprovalChannel().resolve(Resolution.approve())

    def test_wait_for_pending_times_out(self):
        assert QueueApprovalChannel().wait_for_pending(timeout=0.01) is None

    def test_resolved_from_another_thread(self):
        channel = QueueApprovalChannel(poll_interval=0.01)
        results = []

        thread = threading.Thread(target=lambda: results.append(channel.request(_request())))
        thread.start()
        pending = channel.wait_for_pending(timeout=2)
        assert pending.title == "Findings Ready"

        channel.resolve(Resolution.approve("lgtm"))
        thread.join(timeout=2)

        assert results[0].reason == "lgtm"
        assert channel.pending is None


# =============================================================================
# Executor integration
# =============================================================================


class TestExecutorCheckpoint:
    """The run blocks at a checkpoint until it is resolved."""

    def test_blocks_until_resolved(self):
        channel = QueueApprovalChannel(poll_interval=0.01)
        runner = _review_runner()
        executor = Executor(runner, approval_channel=channel, config=EngineConfig())
        outcome = {}

        def run():
            outcome["record"] = executor.run(_review_plan())

        thread = threading.Thread(target=run)
        thread.start()

        pending = channel.wait_for_pending(timeout=5)
        assert pending is not None
        assert pending.stage_id == "review"
        assert pending.summary == {"risks": 2}
        # Defaults to the artifacts produced so far
        assert [ref.path for ref in pending.artifact_refs] == ["analysis.md"]
        assert runner.call_count("report") == 0

        channel.resolve(Resolution.approve())
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert runner.call_count("report") == 1
        review = outcome["record"].output("review")
        assert review["approved"] is True
        assert review["request"]["title"] == "Analysis Complete"

    def test_edits_visible_downstream(self):
        channel = CallbackApprovalChannel(lambda r: Resolution.edit(focus="latency"))
        runner = _review_runner()
        record = Executor(runner, approval_channel=channel, config=EngineConfig()).run(
            _review_plan()
        )
        assert record.output("report")["edits_seen"] == {"focus": "latency"}

    def test_rejection_aborts_run(self):
        channel = CallbackApprovalChannel(lambda r: Resolution.reject("needs more scenarios"))
        runner = _review_runner()
        with pytest.raises(CheckpointRejected) as exc_info:
            Executor(runner, approval_channel=channel, config=EngineConfig()).run(_review_plan())

        assert runner.call_count("report") == 0
        context = exc_info.value.context
        assert context.completed_stages == ("analysis",)

    def test_timeout_policy_from_config(self):
        config = EngineConfig(checkpoint_timeout=0.05, checkpoint_timeout_policy=TimeoutPolicy.APPROVE)
        runner = _review_runner()
        record = Executor(
            runner, approval_channel=QueueApprovalChannel(poll_interval=0.01), config=config
        ).run(_review_plan())
        assert record.output("review")["reason"] == AUTO_APPROVE_REASON
        assert runner.call_count("report") == 1

    def test_missing_channel(self):
        with pytest.raises(PlanError, match="no approval channel"):
            Executor(_review_runner(), config=EngineConfig()).run(_review_plan())

    def test_invalid_request_from_builder(self):
        plan = build_plan("bad", [checkpoint("review", input_builder=lambda view: {"title": "x"})])
        with pytest.raises(PlanError, match="request is invalid"):
            Executor(
                FunctionStageRunner({}),
                approval_channel=CallbackApprovalChannel(lambda r: Resolution.approve()),
                config=EngineConfig(),
            ).run(plan)
