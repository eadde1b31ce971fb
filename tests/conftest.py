"""Shared test fixtures and helpers."""

import pytest

from phased_review.config import EngineConfig, StageKind
from phased_review.workflow.checkpoint import CallbackApprovalChannel, Resolution
from phased_review.workflow.plan import StageSpec

_ENGINE_ENV_VARS = [
    "PHASED_REVIEW_MAX_PARALLEL_UNITS",
    "PHASED_REVIEW_CHECKPOINT_TIMEOUT",
    "PHASED_REVIEW_CHECKPOINT_TIMEOUT_POLICY",
    "PHASED_REVIEW_ARTIFACT_FIELD",
]


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch):
    """Keep the developer's shell settings out of the engine under test."""
    for name in _ENGINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def auto_approve() -> CallbackApprovalChannel:
    """Approval channel that approves every checkpoint immediately."""
    return CallbackApprovalChannel(lambda request: Resolution.approve())


# ---------------------------------------------------------------------------
# Stage shorthands
# ---------------------------------------------------------------------------


def seq(stage_id: str, *deps: str, **kwargs) -> StageSpec:
    return StageSpec(id=stage_id, depends_on=frozenset(deps), **kwargs)


def parallel(stage_id: str, *deps: str, **kwargs) -> StageSpec:
    return StageSpec(id=stage_id, kind=StageKind.PARALLEL, depends_on=frozenset(deps), **kwargs)


def checkpoint(stage_id: str, *deps: str, **kwargs) -> StageSpec:
    return StageSpec(
        id=stage_id, kind=StageKind.CHECKPOINT, depends_on=frozenset(deps), **kwargs
    )


def gate(stage_id: str, *deps: str, threshold: float, gated: tuple[str, ...], **kwargs) -> StageSpec:
    return StageSpec(
        id=stage_id,
        kind=StageKind.SCORE_GATE,
        depends_on=frozenset(deps),
        threshold=threshold,
        gated=gated,
        **kwargs,
    )
