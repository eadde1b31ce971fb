"""Score gates: declarative branching on a numeric threshold.

A ScoreGate stage turns the numeric output of a prior stage into a
ScoreDecision. When the decision does not proceed, the gate's optional
stage group is skipped entirely and the run still completes; a low score
is a branch condition, not a failure.
"""

import math
from numbers import Real
from typing import Any

from pydantic import BaseModel, ConfigDict

from phased_review.errors import SchemaViolation


class ScoreDecision(BaseModel):
    """Outcome of one score gate. Immutable once computed."""

    model_config = ConfigDict(frozen=True)

    score: float
    threshold: float
    proceed: bool


def decide(score: float, threshold: float) -> ScoreDecision:
    """Compare a score against its threshold: proceed when score >= threshold."""
    return ScoreDecision(score=score, threshold=threshold, proceed=score >= threshold)


def coerce_score(stage_id: str, value: Any) -> float:
    """Turn the value a gate's input builder returned into a score.

    Raises:
        SchemaViolation: If the value is not a finite number
    """
    if isinstance(value, bool) or not isinstance(value, Real):
        raise SchemaViolation(
            stage_id, f"score must be a number, got {type(value).__name__}"
        )
    score = float(value)
    if math.isnan(score) or math.isinf(score):
        raise SchemaViolation(stage_id, f"score must be finite, got {score}")
    return score
