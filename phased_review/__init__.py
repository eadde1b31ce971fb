"""phased-review: a phased review orchestration engine.

Runs multi-stage analysis workflows described as data: sequential stages,
parallel fan-out merged in submission order, human approval checkpoints,
and score gates that skip optional improvement stages.
"""

from phased_review.config import EngineConfig, StageKind, StageStatus, TimeoutPolicy
from phased_review.errors import (
    CheckpointRejected,
    CheckpointTimeout,
    FanOutError,
    OrchestrationError,
    PlanError,
    RunCancelled,
    RunnerFailure,
    SchemaViolation,
)
from phased_review.workflow import (
    Executor,
    RunContext,
    RunRecord,
    StagePlan,
    StageSpec,
    build_plan,
    load_plan,
)

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "StageKind",
    "StageStatus",
    "TimeoutPolicy",
    "OrchestrationError",
    "PlanError",
    "RunnerFailure",
    "SchemaViolation",
    "FanOutError",
    "CheckpointRejected",
    "CheckpointTimeout",
    "RunCancelled",
    "Executor",
    "RunContext",
    "RunRecord",
    "StagePlan",
    "StageSpec",
    "build_plan",
    "load_plan",
]
