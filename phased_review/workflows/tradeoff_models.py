"""Pydantic models for the trade-off analysis workflow.

Flat schemas safe for LLM structured output. The engine treats them as
opaque contracts; only the list fields merged across scenarios (risks,
sensitivities, tradeoffs, artifacts) matter to aggregation.
"""

from typing import Literal

from pydantic import BaseModel, Field

from phased_review.workflow.context import ArtifactRef

Priority = Literal["High", "Medium", "Low"]


class BusinessDrivers(BaseModel):
    """Business goals and the quality attributes they imply."""

    business_goals: list[str] = Field(description="Key business goals, most important first")
    constraints: list[str] = Field(default_factory=list, description="Budget, timeline, ...")
    quality_attributes: list[str] = Field(
        description="Quality attributes implied by the goals (performance, security, ...)"
    )


class ArchitectureOverview(BaseModel):
    """Summary of the architecture under review."""

    summary: str = Field(description="High-level architecture overview")
    approaches: list[str] = Field(
        default_factory=list, description="Architectural approaches in use (caching, queues, ...)"
    )


class Scenario(BaseModel):
    """One quality attribute scenario from the utility tree."""

    id: str
    quality_attribute: str
    stimulus: str = Field(description="What triggers the scenario")
    response: str = Field(description="How the system should respond")
    measure: str = Field(default="", description="Quantifiable success criteria")
    priority: Priority = "Medium"


class UtilityTree(BaseModel):
    """Prioritized quality attribute scenarios."""

    scenarios: list[Scenario]


class BrainstormedScenarios(BaseModel):
    """Stakeholder scenarios missing from the utility tree."""

    new_scenarios: list[Scenario] = Field(default_factory=list)


class Risk(BaseModel):
    id: str
    risk: str
    severity: Priority


class SensitivityPoint(BaseModel):
    """A decision critical to achieving one quality attribute."""

    id: str
    decision: str
    impact: str


class TradeoffPoint(BaseModel):
    """A decision that affects several quality attributes at once."""

    id: str
    decision: str
    affects: list[str] = Field(default_factory=list)


class ScenarioAnalysis(BaseModel):
    """Findings for a single scenario (one parallel unit)."""

    scenario_id: str
    support: Literal["Strong", "Adequate", "Weak", "Insufficient"]
    risks: list[Risk] = Field(default_factory=list)
    sensitivities: list[SensitivityPoint] = Field(default_factory=list)
    tradeoffs: list[TradeoffPoint] = Field(default_factory=list)
    artifacts: list[ArtifactRef] = Field(default_factory=list)


class QualityScore(BaseModel):
    """Reviewer's confidence in the analysis, 0-100."""

    score: float = Field(ge=0, le=100)
    rationale: str = ""


class Recommendation(BaseModel):
    id: str
    recommendation: str
    priority: Priority


class Roadmap(BaseModel):
    recommendations: list[Recommendation]
    artifacts: list[ArtifactRef] = Field(default_factory=list)


class FinalReport(BaseModel):
    """Closing report of the analysis."""

    executive_summary: str
    report: str = Field(description="Full report in markdown")
    artifacts: list[ArtifactRef] = Field(default_factory=list)
