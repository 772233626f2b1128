"""
Load pipeline definitions into runtime stages.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from controller.src.errors import PipelineDefinitionError
from controller.src.models.step import PipelineConfig, StageConfig, StepConfig
from controller.src.pipeline.actions import ActionRegistry, default_registry, parse_reference
from controller.src.pipeline.expressions import compile_condition, stage_condition, validate_template
from controller.src.pipeline.graph import resolve
from controller.src.pipeline.stage import ActionStep, ShellStep, Stage, Step

logger = logging.getLogger(__name__)

@dataclass
class Pipeline:
    name: str
    stages: List[Stage]
    sink: Optional[Dict[str, Any]] = None
    env: Dict[str, Any] = field(default_factory=dict)

def parse_definition(source: Union[str, Dict[str, Any]]) -> PipelineConfig:
    """Validate a definition given as YAML text or an already parsed dict."""
    if isinstance(source, str):
        try:
            source = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise PipelineDefinitionError(f"Invalid YAML: {e}") from e

    if not source or not isinstance(source, dict):
        raise PipelineDefinitionError("Pipeline definition must be a non-empty mapping")

    try:
        return PipelineConfig.model_validate(source)
    except ValidationError as e:
        raise PipelineDefinitionError(f"Invalid pipeline definition: {e}") from e

def load_definition(path: Union[str, Path]) -> PipelineConfig:
    with open(path, "r") as f:
        return parse_definition(f.read())

def _validate_templates(value: Any):
    if isinstance(value, str):
        validate_template(value)
    elif isinstance(value, dict):
        for item in value.values():
            _validate_templates(item)
    elif isinstance(value, list):
        for item in value:
            _validate_templates(item)

def build_step(config: StepConfig, actions: ActionRegistry) -> Step:
    if config.condition:
        compile_condition(config.condition)
    _validate_templates(config.env)

    common = dict(
        name=config.display_name,
        id=config.id,
        condition=config.condition,
        env=dict(config.env),
        kind=config.kind,
        timeout=config.timeout,
    )

    if config.run is not None:
        validate_template(config.run)
        return ShellStep(command=config.run, **common)

    name, version = parse_reference(config.uses)
    action, _ = actions.resolve(name)
    _validate_templates(config.with_)
    return ActionStep(action=action, version=version, config=dict(config.with_), **common)

def build_stage(config: StageConfig, actions: ActionRegistry, pipeline_env: Dict[str, Any]) -> Stage:
    if not config.steps:
        raise PipelineDefinitionError(f"Stage '{config.name}' must have at least one step")

    env = {**pipeline_env, **config.env}
    _validate_templates(env)

    try:
        steps = [build_step(step, actions) for step in config.steps]
        condition = stage_condition(config.condition) if config.condition else None
    except PipelineDefinitionError as e:
        raise PipelineDefinitionError(f"Stage '{config.name}': {e}") from e

    return Stage(
        name=config.name,
        steps=steps,
        needs=frozenset(config.needs),
        condition=condition,
        condition_source=config.condition,
        outputs=dict(config.outputs),
        inputs=list(config.inputs),
        image=config.image,
        env=env,
    )

def build_pipeline(config: PipelineConfig, actions: Optional[ActionRegistry] = None) -> Pipeline:
    """Turn a validated definition into stages; the stage graph is checked here too."""
    actions = actions or default_registry()
    stages = [build_stage(stage, actions, config.env) for stage in config.stages]
    resolve(stages)

    sink = config.sink.model_dump() if config.sink is not None else None
    logger.info(f"Loaded pipeline '{config.name}' with {len(stages)} stages")
    return Pipeline(name=config.name, stages=stages, sink=sink, env=dict(config.env))
