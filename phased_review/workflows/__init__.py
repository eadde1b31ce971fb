"""Ready-made stage plans."""

from pathlib import Path

from .tradeoff_analysis import BUILDERS as TRADEOFF_BUILDERS
from .tradeoff_analysis import DEFAULT_QUALITY_THRESHOLD, build_tradeoff_analysis_plan

# Plan file equivalent of build_tradeoff_analysis_plan()
TRADEOFF_PLAN_FILE = Path(__file__).parent / "tradeoff_analysis.yaml"

__all__ = [
    "TRADEOFF_BUILDERS",
    "TRADEOFF_PLAN_FILE",
    "DEFAULT_QUALITY_THRESHOLD",
    "build_tradeoff_analysis_plan",
]
