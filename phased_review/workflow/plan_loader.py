"""Build StagePlans from YAML files or plain mappings.

A plan file names everything by reference; builder functions and output
schemas are looked up in a registry first, then imported from
``"module:attribute"`` paths.

Example plan.yaml:

    name: tradeoff-analysis
    aggregate_fields: [risks, tradeoffs]
    stages:
      - id: utility-tree
        input: phased_review.workflows.tradeoff_analysis:utility_tree_input
        output_schema: phased_review.workflows.tradeoff_analysis:UtilityTree
      - id: scenario-analysis
        kind: parallel
        depends_on: [utility-tree]
        input: scenario_units
        merge_fields: [risks, tradeoffs]
"""

import importlib
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from phased_review.config import StageKind
from phased_review.errors import PlanError

from .plan import StagePlan, StageSpec

logger = logging.getLogger(__name__)


class StageConfig(BaseModel):
    """One stage entry in a plan file."""

    model_config = ConfigDict(extra="forbid")

    id: str
    kind: StageKind = StageKind.SEQUENTIAL
    depends_on: list[str] = Field(default_factory=list)
    input: str | None = Field(default=None, description="Builder name or module:attribute")
    output_schema: str | None = Field(default=None, description="Schema name or module:attribute")
    merge_fields: list[str] | None = None
    concurrency_limit: int | None = None
    threshold: float | None = None
    gated: list[str] = Field(default_factory=list)
    description: str = ""


class PlanConfig(BaseModel):
    """Top level of a plan file."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    aggregate_fields: list[str] = Field(default_factory=list)
    stages: list[StageConfig]


def load_plan(
    source: str | Path | Mapping[str, Any],
    builders: Mapping[str, Any] | None = None,
) -> StagePlan:
    """Load and validate a plan.

    Args:
        source: Path to a YAML file, or an already-parsed mapping
        builders: Registry of input builders and output schemas by name

    Returns:
        The validated StagePlan

    Raises:
        PlanError: If the file cannot be read, does not match the plan
            format, names an unresolvable reference, or describes an
            invalid plan
    """
    data = _read_source(source)
    try:
        config = PlanConfig.model_validate(data)
    except ValidationError as e:
        raise PlanError(f"Invalid plan definition: {e}") from e

    registry = dict(builders or {})
    stages = [
        StageSpec(
            id=stage.id,
            kind=stage.kind,
            depends_on=frozenset(stage.depends_on),
            input_builder=_resolve(stage.input, registry, stage.id),
            output_schema=_resolve(stage.output_schema, registry, stage.id),
            merge_fields=stage.merge_fields,
            concurrency_limit=stage.concurrency_limit,
            threshold=stage.threshold,
            gated=tuple(stage.gated),
            description=stage.description,
        )
        for stage in config.stages
    ]

    plan = StagePlan(
        name=config.name,
        stages=tuple(stages),
        aggregate_fields=tuple(config.aggregate_fields),
        description=config.description,
    )
    logger.info(f"Loaded plan '{plan.name}' with {len(plan.stages)} stages")
    return plan


def _read_source(source: str | Path | Mapping[str, Any]) -> Any:
    if isinstance(source, Mapping):
        return dict(source)

    path = Path(source)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PlanError(f"Could not read plan file {path}: {e}") from e
    if not isinstance(data, Mapping):
        raise PlanError(f"Plan file {path} must contain a mapping at the top level")
    return data


def _resolve(ref: str | None, registry: Mapping[str, Any], stage_id: str) -> Any:
    """Resolve a builder or schema reference."""
    if ref is None:
        return None
    if ref in registry:
        return registry[ref]
    if ":" not in ref:
        raise PlanError(
            f"Stage '{stage_id}' references unknown name '{ref}' "
            f"(registered: {', '.join(sorted(registry)) or 'none'})",
            stage_id=stage_id,
        )

    module_path, attr_name = ref.rsplit(":", 1)
    try:
        module = importlib.import_module(module_path)
        return getattr(module, attr_name)
    except (ImportError, AttributeError) as e:
        raise PlanError(f"Stage '{stage_id}' cannot import '{ref}': {e}", stage_id=stage_id) from e
