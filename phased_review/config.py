"""Centralized configuration for the phased review engine.

This module provides a single source of truth for engine configuration,
eliminating hardcoded values scattered across the workflow package.

Design Principles:
- Enums for type-safe stage kinds and status values
- Engine defaults in one place
- Environment overrides read through EngineConfig.from_env()
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# =============================================================================
# Enums for Type Safety
# =============================================================================


class StageKind(Enum):
    """How the executor dispatches a stage."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CHECKPOINT = "checkpoint"
    SCORE_GATE = "score_gate"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid stage kind values as strings."""
        return [kind.value for kind in cls]


class StageStatus(Enum):
    """Valid status values for stages in a run record."""

    COMPLETED = "completed"
    SKIPPED = "skipped"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid status values as strings."""
        return [status.value for status in cls]


class TimeoutPolicy(Enum):
    """What a checkpoint does when its approver never answers."""

    ABORT = "abort"
    APPROVE = "approve"


# =============================================================================
# Engine Defaults
# =============================================================================

# Output field that carries artifact references ({path, format, label})
DEFAULT_ARTIFACT_FIELD = "artifacts"

# How often a blocked checkpoint wakes up to look at the cancellation token
CHECKPOINT_POLL_INTERVAL = 0.1

# Reason recorded when a checkpoint is approved by the timeout policy
AUTO_APPROVE_REASON = "auto-approved after timeout"

# Default format for artifact references that do not declare one
DEFAULT_ARTIFACT_FORMAT = "markdown"

# Parallel stage output key holding the unit outputs; never a merge field
UNITS_FIELD = "units"


# =============================================================================
# Engine Configuration
# =============================================================================


@dataclass(frozen=True)
class EngineConfig:
    """Executor-wide settings.

    Attributes:
        max_parallel_units: Concurrency cap for Parallel stages that declare none.
            None means unbounded up to the unit count.
        checkpoint_timeout: Seconds a checkpoint waits for a resolution.
            None waits forever.
        checkpoint_timeout_policy: What to do when the timeout expires.
        artifact_field: Output field scanned for artifact references.
    """

    max_parallel_units: int | None = None
    checkpoint_timeout: float | None = None
    checkpoint_timeout_policy: TimeoutPolicy = TimeoutPolicy.ABORT
    artifact_field: str = DEFAULT_ARTIFACT_FIELD

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables."""
        max_units = _positive_int_env("PHASED_REVIEW_MAX_PARALLEL_UNITS")
        timeout = _positive_float_env("PHASED_REVIEW_CHECKPOINT_TIMEOUT")

        policy_str = os.getenv("PHASED_REVIEW_CHECKPOINT_TIMEOUT_POLICY", "abort").lower()
        try:
            policy = TimeoutPolicy(policy_str)
        except ValueError:
            logger.warning(f"Unknown checkpoint timeout policy '{policy_str}', defaulting to abort")
            policy = TimeoutPolicy.ABORT

        return cls(
            max_parallel_units=max_units,
            checkpoint_timeout=timeout,
            checkpoint_timeout_policy=policy,
            artifact_field=os.getenv("PHASED_REVIEW_ARTIFACT_FIELD", DEFAULT_ARTIFACT_FIELD),
        )


def _positive_int_env(name: str) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, ignoring")
        return None
    if value < 1:
        logger.warning(f"{name}={value} must be >= 1, ignoring")
        return None
    return value


def _positive_float_env(name: str) -> float | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number, ignoring")
        return None
    if value <= 0:
        logger.warning(f"{name}={value} must be > 0, ignoring")
        return None
    return value
