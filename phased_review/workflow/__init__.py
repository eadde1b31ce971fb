"""Phased review workflow engine.

This package executes declarative stage plans: sequential stages, parallel
fan-out with deterministic fan-in, human approval checkpoints and score
gates that skip optional stage groups.
"""

# Plan definition
from .plan import InputBuilder, StagePlan, StageSpec, build_plan
from .plan_loader import PlanConfig, StageConfig, load_plan

# Run state
from .context import ArtifactRef, RunContext, StageInputView
from .cancellation import CancellationToken

# Stage kinds
from .stage_runner import FunctionStageRunner, StageRunner, validate_output
from .fan_out import AggregatedResult, FanOutAggregator, ParallelUnit, to_units
from .checkpoint import (
    ApprovalChannel,
    CallbackApprovalChannel,
    CheckpointGate,
    CheckpointRequest,
    QueueApprovalChannel,
    Resolution,
)
from .score_gate import ScoreDecision, coerce_score, decide

# Results and execution
from .accumulator import ResultAccumulator, RunRecord, StageRecord
from .executor import Executor

__all__ = [
    # Plan
    "InputBuilder",
    "StagePlan",
    "StageSpec",
    "build_plan",
    "PlanConfig",
    "StageConfig",
    "load_plan",
    # Run state
    "ArtifactRef",
    "RunContext",
    "StageInputView",
    "CancellationToken",
    # Stage kinds
    "StageRunner",
    "FunctionStageRunner",
    "validate_output",
    "ParallelUnit",
    "AggregatedResult",
    "FanOutAggregator",
    "to_units",
    "ApprovalChannel",
    "CallbackApprovalChannel",
    "QueueApprovalChannel",
    "CheckpointGate",
    "CheckpointRequest",
    "Resolution",
    "ScoreDecision",
    "decide",
    "coerce_score",
    # Results
    "ResultAccumulator",
    "RunRecord",
    "StageRecord",
    "Executor",
]
