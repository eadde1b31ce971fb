"""Architecture trade-off analysis as a stage plan.

Stages:
    business-drivers        Sequential   goals and implied quality attributes
    architecture-overview   Sequential   architecture summary and approaches
    utility-tree            Sequential   prioritized quality attribute scenarios
    scenario-analysis       Parallel     one unit per high-priority scenario
    findings-review         Checkpoint   human review of the initial findings
    scenario-brainstorm     Sequential   stakeholder scenarios missing from the tree
    revisited-analysis      Parallel     one unit per new high-priority scenario
    quality-score           Sequential   confidence in the analysis (0-100)
    quality-gate            ScoreGate    roadmap only runs at or above threshold
    roadmap                 Sequential   prioritized recommendations (gated)
    final-report            Sequential   closing report

Findings of both analysis passes are concatenated, initial pass first, for
scoring, the roadmap, the report and the run record's aggregates.

The roadmap turns findings into committed work, so it is only produced when
the analysis is trustworthy enough to plan against. Below the threshold the
run still completes with a final report.

Initial input is a mapping:

    {
        "system_name": "Payments Platform",
        "architecture_documentation": "...",
        "business_drivers": "...",
        "stakeholders": ["architect", "operations"],   # optional
    }
"""

from typing import Any

from phased_review.config import StageKind
from phased_review.workflow.checkpoint import CheckpointRequest
from phased_review.workflow.context import StageInputView
from phased_review.workflow.fan_out import ParallelUnit
from phased_review.workflow.plan import StagePlan, StageSpec, build_plan

from .tradeoff_models import (
    ArchitectureOverview,
    BrainstormedScenarios,
    BusinessDrivers,
    FinalReport,
    QualityScore,
    Roadmap,
    ScenarioAnalysis,
    UtilityTree,
)

PLAN_NAME = "tradeoff-analysis"

# Quality score the analysis must reach before a roadmap is produced
DEFAULT_QUALITY_THRESHOLD = 85

# Scenarios analyzed in parallel per analysis pass
MAX_SCENARIOS = 6

FINDING_FIELDS = ("risks", "sensitivities", "tradeoffs")

ANALYSIS_STAGES = ("scenario-analysis", "revisited-analysis")


# =============================================================================
# Input Builders
# =============================================================================


def _system_name(view: StageInputView) -> str:
    return (view.initial_input or {}).get("system_name", "System")


def _analysis_units(
    view: StageInputView, scenarios: list[dict[str, Any]]
) -> list[ParallelUnit]:
    approaches = view.output("architecture-overview")["approaches"]
    top = [s for s in scenarios if s["priority"] == "High"][:MAX_SCENARIOS]
    return [
        ParallelUnit(
            unit_id=scenario["id"],
            payload={
                "system_name": _system_name(view),
                "scenario": scenario,
                "approaches": approaches,
            },
        )
        for scenario in top
    ]


def _combined_findings(view: StageInputView) -> dict[str, list[Any]]:
    """Findings of both analysis passes, initial pass first."""
    combined: dict[str, list[Any]] = {name: [] for name in FINDING_FIELDS}
    for stage_id in ANALYSIS_STAGES:
        output = view.output(stage_id)
        for name in FINDING_FIELDS:
            combined[name].extend(output.get(name, []))
    return combined


def business_drivers_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        "business_drivers": (view.initial_input or {}).get("business_drivers", ""),
    }


def architecture_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        "architecture_documentation": (view.initial_input or {}).get(
            "architecture_documentation", ""
        ),
    }


def utility_tree_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        "quality_attributes": view.output("business-drivers")["quality_attributes"],
        "approaches": view.output("architecture-overview")["approaches"],
    }


def scenario_units(view: StageInputView) -> list[ParallelUnit]:
    """One unit per high-priority scenario, in utility tree order."""
    return _analysis_units(view, view.output("utility-tree")["scenarios"])


def findings_review_request(view: StageInputView) -> CheckpointRequest:
    findings = view.output("scenario-analysis")
    counts = {name: len(findings.get(name, [])) for name in FINDING_FIELDS}
    return CheckpointRequest(
        question=(
            f"Initial analysis of {len(findings['units'])} high-priority scenarios complete. "
            "Proceed to brainstorm additional scenarios?"
        ),
        title="Initial Scenario Analysis Complete",
        summary={"scenarios": len(findings["units"]), **counts},
    )


def brainstorm_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        "existing_scenarios": view.output("utility-tree")["scenarios"],
        "approaches": view.output("architecture-overview")["approaches"],
        "stakeholders": (view.initial_input or {}).get("stakeholders", []),
        "reviewer_edits": view.output("findings-review")["edits"],
    }


def revisited_scenario_units(view: StageInputView) -> list[ParallelUnit]:
    """One unit per new high-priority scenario from the brainstorm."""
    return _analysis_units(view, view.output("scenario-brainstorm")["new_scenarios"])


def quality_score_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        **_combined_findings(view),
        "reviewer_edits": view.output("findings-review")["edits"],
    }


def quality_gate_score(view: StageInputView) -> float:
    return view.output("quality-score")["score"]


def roadmap_input(view: StageInputView) -> dict[str, Any]:
    findings = _combined_findings(view)
    return {
        "system_name": _system_name(view),
        "risks": findings["risks"],
        "tradeoffs": findings["tradeoffs"],
        "score": view.output("quality-score")["score"],
    }


def final_report_input(view: StageInputView) -> dict[str, Any]:
    return {
        "system_name": _system_name(view),
        "scenarios": view.output("utility-tree")["scenarios"],
        "new_scenarios": view.output("scenario-brainstorm")["new_scenarios"],
        **_combined_findings(view),
        "quality": view.output("quality-gate"),
    }


# Registry for plan files that name builders and schemas
BUILDERS: dict[str, Any] = {
    "business_drivers_input": business_drivers_input,
    "architecture_input": architecture_input,
    "utility_tree_input": utility_tree_input,
    "scenario_units": scenario_units,
    "findings_review_request": findings_review_request,
    "brainstorm_input": brainstorm_input,
    "revisited_scenario_units": revisited_scenario_units,
    "quality_score_input": quality_score_input,
    "quality_gate_score": quality_gate_score,
    "roadmap_input": roadmap_input,
    "final_report_input": final_report_input,
    "BusinessDrivers": BusinessDrivers,
    "ArchitectureOverview": ArchitectureOverview,
    "UtilityTree": UtilityTree,
    "ScenarioAnalysis": ScenarioAnalysis,
    "BrainstormedScenarios": BrainstormedScenarios,
    "QualityScore": QualityScore,
    "Roadmap": Roadmap,
    "FinalReport": FinalReport,
}


# =============================================================================
# Plan
# =============================================================================


def build_tradeoff_analysis_plan(
    threshold: float = DEFAULT_QUALITY_THRESHOLD,
    concurrency_limit: int | None = None,
) -> StagePlan:
    """Build the trade-off analysis plan.

    Args:
        threshold: Minimum quality score for the roadmap to run
        concurrency_limit: Cap on concurrently analyzed scenarios per pass

    Returns:
        A validated StagePlan
    """
    stages = [
        StageSpec(
            id="business-drivers",
            input_builder=business_drivers_input,
            output_schema=BusinessDrivers,
            description="Business goals, constraints and implied quality attributes",
        ),
        StageSpec(
            id="architecture-overview",
            input_builder=architecture_input,
            output_schema=ArchitectureOverview,
            description="Architecture summary and approaches in use",
        ),
        StageSpec(
            id="utility-tree",
            depends_on=frozenset({"business-drivers", "architecture-overview"}),
            input_builder=utility_tree_input,
            output_schema=UtilityTree,
            description="Prioritized quality attribute scenarios",
        ),
        StageSpec(
            id="scenario-analysis",
            kind=StageKind.PARALLEL,
            depends_on=frozenset({"utility-tree", "architecture-overview"}),
            input_builder=scenario_units,
            output_schema=ScenarioAnalysis,
            merge_fields=FINDING_FIELDS,
            concurrency_limit=concurrency_limit,
            description="Risks, sensitivity points and trade-offs per scenario",
        ),
        StageSpec(
            id="findings-review",
            kind=StageKind.CHECKPOINT,
            depends_on=frozenset({"scenario-analysis"}),
            input_builder=findings_review_request,
            description="Human review of the initial findings",
        ),
        StageSpec(
            id="scenario-brainstorm",
            depends_on=frozenset({"utility-tree", "architecture-overview", "findings-review"}),
            input_builder=brainstorm_input,
            output_schema=BrainstormedScenarios,
            description="Stakeholder scenarios missing from the utility tree",
        ),
        StageSpec(
            id="revisited-analysis",
            kind=StageKind.PARALLEL,
            depends_on=frozenset({"scenario-brainstorm", "architecture-overview"}),
            input_builder=revisited_scenario_units,
            output_schema=ScenarioAnalysis,
            merge_fields=FINDING_FIELDS,
            concurrency_limit=concurrency_limit,
            description="Findings for the brainstormed high-priority scenarios",
        ),
        StageSpec(
            id="quality-score",
            depends_on=frozenset({*ANALYSIS_STAGES, "findings-review"}),
            input_builder=quality_score_input,
            output_schema=QualityScore,
            description="Confidence in the analysis",
        ),
        StageSpec(
            id="quality-gate",
            kind=StageKind.SCORE_GATE,
            depends_on=frozenset({"quality-score"}),
            input_builder=quality_gate_score,
            threshold=threshold,
            gated=("roadmap",),
        ),
        StageSpec(
            id="roadmap",
            depends_on=frozenset({*ANALYSIS_STAGES, "quality-score"}),
            input_builder=roadmap_input,
            output_schema=Roadmap,
            description="Prioritized recommendations",
        ),
        StageSpec(
            id="final-report",
            depends_on=frozenset({"utility-tree", *ANALYSIS_STAGES, "quality-gate"}),
            input_builder=final_report_input,
            output_schema=FinalReport,
            description="Closing report",
        ),
    ]
    return build_plan(
        PLAN_NAME,
        stages,
        aggregate_fields=FINDING_FIELDS,
        description="Architecture trade-off analysis",
    )
