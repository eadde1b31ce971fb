"""Executor: drives a StagePlan from start to RunRecord.

The executor walks the plan in dependency order and, for each stage:
1. Skips it if the context already holds its output (resumed runs)
2. Skips it if a closed score gate guards it
3. Builds the stage input from prior outputs through a StageInputView
4. Dispatches on kind: StageRunner, FanOutAggregator, CheckpointGate or ScoreGate
5. Records the output and any artifacts before moving on

Any failure aborts the run immediately. The error carries the RunContext as
it stood when the run stopped; passing that context back to ``run()``
resumes from the failed stage. The engine never retries on its own.
"""

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from phased_review.config import EngineConfig, StageKind, StageStatus
from phased_review.errors import OrchestrationError, PlanError, RunnerFailure, SchemaViolation
from phased_review.telemetry import record_stage_event, run_span, stage_span

from .accumulator import ResultAccumulator, RunRecord
from .cancellation import CancellationToken
from .checkpoint import ApprovalChannel, CheckpointGate, CheckpointRequest
from .context import ArtifactRef, RunContext, StageInputView
from .fan_out import FanOutAggregator, to_units
from .plan import StagePlan, StageSpec
from .score_gate import coerce_score, decide
from .stage_runner import StageRunner, validate_output

logger = logging.getLogger(__name__)

StageStartCallback = Callable[[str, int, int], None]
StageCompleteCallback = Callable[[str, int, int, dict[str, Any]], None]


class Executor:
    """Runs stage plans against a StageRunner.

    Example:
        executor = Executor(runner, approval_channel=CallbackApprovalChannel(ask_user))
        record = executor.run(build_tradeoff_analysis_plan(), {"system": "..."})
        print(record.totals["total_risks"])
    """

    def __init__(
        self,
        runner: StageRunner,
        approval_channel: ApprovalChannel | None = None,
        config: EngineConfig | None = None,
        on_stage_start: StageStartCallback | None = None,
        on_stage_complete: StageCompleteCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        """Initialize the executor.

        Args:
            runner: Capability that executes Sequential stages and parallel units
            approval_channel: Where checkpoint requests are sent
            config: Engine settings (defaults to EngineConfig.from_env())
            on_stage_start: Called as (stage_id, index, total) before a stage runs
            on_stage_complete: Called as (stage_id, index, total, result) afterwards
            cancel_token: Token that cancels the run from another thread
        """
        self.runner = runner
        self.approval_channel = approval_channel
        self.config = config or EngineConfig.from_env()
        self.on_stage_start = on_stage_start
        self.on_stage_complete = on_stage_complete
        self.cancel_token = cancel_token or CancellationToken()

    def run(
        self,
        plan: StagePlan,
        initial_input: Any = None,
        context: RunContext | None = None,
    ) -> RunRecord:
        """Execute a plan.

        Args:
            plan: The stage plan
            initial_input: Run input, readable by every input builder (ignored when
                resuming; the context keeps the input of the original run)
            context: Context of an earlier, interrupted run to resume

        Returns:
            A RunRecord snapshot, detached from the RunContext

        Raises:
            OrchestrationError: Any engine error; ``error.context`` holds the
                RunContext at the point of failure
        """
        plan.validate()
        if context is None:
            context = RunContext(
                run_id=f"{plan.name}-{uuid.uuid4().hex[:8]}", initial_input=initial_input
            )
        else:
            if initial_input is not None and initial_input != context.initial_input:
                logger.warning(
                    f"Resuming run {context.run_id}: ignoring initial_input, "
                    "the resumed context keeps its original input"
                )
            logger.info(
                f"Resuming run {context.run_id}: {len(context.processed_stages)} stage(s) already done"
            )

        order = plan.execution_order()
        total = len(order)

        logger.info("=" * 60)
        logger.info(f"RUNNING PLAN: {plan.name} ({total} stages, run_id={context.run_id})")
        logger.info("=" * 60)

        start_time = time.time()
        with run_span(plan.name, context.run_id, total) as span:
            try:
                for index, stage in enumerate(order):
                    self._run_stage(plan, stage, context, index, total)
            except OrchestrationError as e:
                e.context = context
                logger.error(f"Run {context.run_id} stopped at stage '{e.stage_id}': {e}")
                raise

            record = ResultAccumulator(plan).fold(context)
            span.set_attribute("run.duration_seconds", time.time() - start_time)
            span.set_attribute("run.skipped_stages", len(record.skipped))

        logger.info(
            f"Plan {plan.name} completed in {time.time() - start_time:.2f}s "
            f"(completed={len(context.completed_stages)}, skipped={len(context.skipped_stages)})"
        )
        return record

    # -------------------------------------------------------------------------
    # Stage loop
    # -------------------------------------------------------------------------

    def _run_stage(
        self,
        plan: StagePlan,
        stage: StageSpec,
        context: RunContext,
        index: int,
        total: int,
    ) -> None:
        if context.is_done(stage.id):
            logger.info(f"{stage.id} already completed - skipping")
            return

        self.cancel_token.raise_if_cancelled(stage.id)

        gate_id = plan.gate_of(stage.id)
        if gate_id is not None and not self._gate_open(context, gate_id):
            logger.info(f"Skipping {stage.id} ({index + 1}/{total}): score gate {gate_id} closed")
            context.mark_skipped(stage.id)
            self._notify_complete(stage.id, index, total, {"status": StageStatus.SKIPPED.value})
            return

        self._notify_start(stage.id, index, total)
        start_time = time.time()

        with stage_span(stage.id, stage.kind.value, sorted(stage.depends_on)) as span:
            view = StageInputView(context, stage.id, plan.ancestors(stage.id))
            payload = self._build_input(stage, view)

            if stage.kind == StageKind.SEQUENTIAL:
                output = self._run_sequential(stage, payload)
            elif stage.kind == StageKind.PARALLEL:
                output = self._run_parallel(stage, payload, span)
            elif stage.kind == StageKind.CHECKPOINT:
                output = self._run_checkpoint(stage, payload, context, span)
            else:
                output = self._run_score_gate(stage, payload, span)

            artifacts = self._collect_artifacts(stage.id, output)
            context.record(stage.id, output, artifacts)

            execution_time = time.time() - start_time
            span.set_attribute("stage.duration_seconds", execution_time)
            span.set_attribute("stage.artifact_count", len(artifacts))

        logger.info(f"Stage {stage.id} completed in {execution_time:.2f}s")
        self._notify_complete(
            stage.id,
            index,
            total,
            {"status": StageStatus.COMPLETED.value, "output": output},
        )

    def _gate_open(self, context: RunContext, gate_id: str) -> bool:
        if context.is_skipped(gate_id):
            return False
        return bool(context.output(gate_id)["proceed"])

    def _build_input(self, stage: StageSpec, view: StageInputView) -> Any:
        if stage.input_builder is None:
            return view.initial_input
        try:
            return stage.input_builder(view)
        except OrchestrationError:
            raise
        except Exception as e:
            raise PlanError(
                f"Input builder for stage '{stage.id}' failed: {e}", stage_id=stage.id
            ) from e

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _run_sequential(self, stage: StageSpec, payload: Any) -> Any:
        try:
            raw = self.runner.invoke(stage.id, payload, stage.output_schema)
        except OrchestrationError:
            raise
        except Exception as e:
            logger.error(
                f"Stage {stage.id} failed: {e}",
                exc_info=True,
                extra={"stage": stage.id, "error_type": type(e).__name__},
            )
            raise RunnerFailure(stage.id, e) from e
        return validate_output(stage.id, raw, stage.output_schema)

    def _run_parallel(self, stage: StageSpec, payload: Any, span: Any) -> dict[str, Any]:
        units = to_units(stage.id, payload)
        limit = stage.concurrency_limit or self.config.max_parallel_units
        span.set_attribute("stage.unit_count", len(units))

        aggregator = FanOutAggregator(self.runner, self.cancel_token)
        result = aggregator.run_parallel(
            stage.id,
            units,
            limit=limit,
            output_schema=stage.output_schema,
            merge_fields=stage.merge_fields,
            artifact_field=self.config.artifact_field,
        )
        record_stage_event(
            span,
            "fan_out_joined",
            unit_count=len(units),
            merged_fields=",".join(result.merged),
        )
        return result.to_output()

    def _run_checkpoint(
        self, stage: StageSpec, payload: Any, context: RunContext, span: Any
    ) -> dict[str, Any]:
        if self.approval_channel is None:
            raise PlanError(
                f"Plan reaches checkpoint '{stage.id}' but no approval channel is configured",
                stage_id=stage.id,
            )

        request = self._build_checkpoint_request(stage, payload, context)
        record_stage_event(span, "checkpoint_requested", title=request.title)

        gate = CheckpointGate(
            self.approval_channel,
            timeout=self.config.checkpoint_timeout,
            timeout_policy=self.config.checkpoint_timeout_policy,
            cancel_token=self.cancel_token,
        )
        resolution = gate.checkpoint(request)
        record_stage_event(span, "checkpoint_resolved", approved=resolution.approved)

        return {
            "approved": resolution.approved,
            "reason": resolution.reason,
            "edits": dict(resolution.edits),
            "request": request.model_dump(mode="json"),
        }

    def _build_checkpoint_request(
        self, stage: StageSpec, payload: Any, context: RunContext
    ) -> CheckpointRequest:
        try:
            if isinstance(payload, CheckpointRequest):
                request = payload.model_copy(update={"stage_id": stage.id})
            elif isinstance(payload, Mapping):
                request = CheckpointRequest.model_validate({**payload, "stage_id": stage.id})
            else:
                raise PlanError(
                    f"Checkpoint '{stage.id}' input builder must return a CheckpointRequest "
                    f"or a mapping, got {type(payload).__name__}",
                    stage_id=stage.id,
                )
        except ValidationError as e:
            raise PlanError(
                f"Checkpoint '{stage.id}' request is invalid: {e}", stage_id=stage.id
            ) from e

        if not request.artifact_refs:
            request = request.model_copy(update={"artifact_refs": list(context.artifacts)})
        return request

    def _run_score_gate(self, stage: StageSpec, payload: Any, span: Any) -> dict[str, Any]:
        score = coerce_score(stage.id, payload)
        decision = decide(score, stage.threshold)
        logger.info(
            f"Score gate {stage.id}: score={decision.score:g} threshold={decision.threshold:g} "
            f"proceed={decision.proceed}"
        )
        record_stage_event(
            span,
            "score_decided",
            score=decision.score,
            threshold=decision.threshold,
            proceed=decision.proceed,
        )
        return decision.model_dump()

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def _collect_artifacts(self, stage_id: str, output: Any) -> list[ArtifactRef]:
        field = self.config.artifact_field
        if not isinstance(output, Mapping) or output.get(field) is None:
            return []

        items = output[field]
        if not isinstance(items, list):
            raise SchemaViolation(stage_id, f"'{field}' must be a list of artifact references")

        artifacts = []
        for item in items:
            try:
                if isinstance(item, str):
                    artifacts.append(ArtifactRef(path=item))
                else:
                    artifacts.append(ArtifactRef.model_validate(item))
            except ValidationError as e:
                raise SchemaViolation(
                    stage_id,
                    f"invalid artifact reference {item!r}",
                    errors=e.errors(include_url=False),
                ) from e
        return artifacts

    # -------------------------------------------------------------------------
    # Progress hooks
    # -------------------------------------------------------------------------

    def _notify_start(self, stage_id: str, index: int, total: int) -> None:
        logger.info(f"Starting: {stage_id} ({index + 1}/{total})")
        if self.on_stage_start:
            try:
                self.on_stage_start(stage_id, index, total)
            except (TypeError, AttributeError, ValueError) as e:
                logger.error(f"on_stage_start callback failed: {e}")

    def _notify_complete(
        self, stage_id: str, index: int, total: int, result: dict[str, Any]
    ) -> None:
        if self.on_stage_complete:
            try:
                self.on_stage_complete(stage_id, index, total, result)
            except (TypeError, AttributeError, ValueError) as e:
                logger.error(f"on_stage_complete callback failed: {e}")
