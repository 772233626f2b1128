"""
Pipeline YAML parser and validator.
"""

import fnmatch
import yaml
from typing import List, Dict, Any, Optional

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    # Validate name (optional but recommended)
    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    # YAML 1.1 reads a bare `on:` key as boolean True
    trigger = normalize_trigger(config.get("on", config.get(True)))

    env = config.get("env", {}) or {}
    if not isinstance(env, dict):
        raise PipelineConfigError("Pipeline 'env' must be a mapping")

    sink = config.get("sink")
    if sink is not None and not isinstance(sink, dict):
        raise PipelineConfigError("Pipeline 'sink' must be a mapping")

    # Validate stages
    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if isinstance(stages, dict):
        stages = [{**(body or {}), "name": stage_name} for stage_name, body in stages.items()]
    elif not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a mapping or a list")

    if len(stages) == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")

    validated_stages = []
    for i, stage in enumerate(stages):
        validated_stages.append(validate_stage(stage, i))

    check_dependencies(validated_stages)

    return {
        "name": name,
        "on": trigger,
        "env": env,
        "sink": sink,
        "stages": validated_stages,
    }

def normalize_trigger(trigger: Any) -> Optional[Dict[str, Dict[str, List[str]]]]:
    """
    Normalize `on:` into {event: {"branches": [...]}}.
    Accepts `on: push`, `on: [push]` and `on: {push: {branches: [...]}}`.
    """
    if trigger is None:
        return None

    if isinstance(trigger, str):
        return {trigger: {"branches": []}}

    if isinstance(trigger, list):
        if not all(isinstance(event, str) for event in trigger):
            raise PipelineConfigError("Trigger events must be strings")
        return {event: {"branches": []} for event in trigger}

    if not isinstance(trigger, dict):
        raise PipelineConfigError("Pipeline 'on' must be a string, list or mapping")

    normalized = {}
    for event, body in trigger.items():
        body = body or {}
        if not isinstance(body, dict):
            raise PipelineConfigError(f"Trigger '{event}' must be a mapping")
        branches = body.get("branches", [])
        if isinstance(branches, str):
            branches = [branches]
        if not isinstance(branches, list) or not all(isinstance(b, str) for b in branches):
            raise PipelineConfigError(f"Trigger '{event}' branches must be a list of strings")
        normalized[str(event)] = {"branches": branches}
    return normalized

def matches_trigger(config: Dict[str, Any], event: str, branch: str) -> bool:
    """Whether a validated pipeline runs for `event` on `branch`. No `on:` runs on every push."""
    trigger = config.get("on")
    if trigger is None:
        return event == "push"

    if event not in trigger:
        return False

    branches = trigger[event].get("branches") or []
    if not branches:
        return True
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in branches)

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    name = stage["name"]
    if not isinstance(name, str) or not name:
        raise PipelineConfigError(f"Stage {index} 'name' must be a non-empty string")

    needs = stage.get("needs", [])
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list) or not all(isinstance(n, str) for n in needs):
        raise PipelineConfigError(f"Stage '{name}' 'needs' must be a list of stage names")

    condition = stage.get("if")
    if condition is not None and not isinstance(condition, str):
        raise PipelineConfigError(f"Stage '{name}' 'if' must be a string")

    outputs = stage.get("outputs", {}) or {}
    if not isinstance(outputs, dict):
        raise PipelineConfigError(f"Stage '{name}' 'outputs' must map artifact names to paths")

    inputs = stage.get("inputs", []) or []
    if isinstance(inputs, str):
        inputs = [inputs]
    if not isinstance(inputs, list):
        raise PipelineConfigError(f"Stage '{name}' 'inputs' must be a list of artifact names")

    steps = stage.get("steps")
    if not isinstance(steps, list) or len(steps) == 0:
        raise PipelineConfigError(f"Stage '{name}' must have at least one step")

    validated = {
        "name": name,
        "needs": needs,
        "env": stage.get("env", {}) or {},
        "outputs": outputs,
        "inputs": inputs,
        "steps": [validate_step(step, name, i) for i, step in enumerate(steps)],
    }
    if condition is not None:
        validated["if"] = condition
    if stage.get("image") is not None:
        validated["image"] = str(stage["image"])
    return validated

def validate_step(step: Dict[str, Any], stage_name: str, index: int) -> Dict[str, Any]:
    """Validate a single pipeline step."""
    where = f"Stage '{stage_name}' step {index}"
    if not isinstance(step, dict):
        raise PipelineConfigError(f"{where} must be a dictionary")

    # Exactly one of run / uses
    if ("run" in step) == ("uses" in step):
        raise PipelineConfigError(f"{where} must define exactly one of 'run' or 'uses'")

    if "run" in step and not isinstance(step["run"], str):
        raise PipelineConfigError(f"{where} 'run' must be a string")

    if "uses" in step and not isinstance(step["uses"], str):
        raise PipelineConfigError(f"{where} 'uses' must be a string")

    for key in ("name", "id", "if"):
        if key in step and not isinstance(step[key], str):
            raise PipelineConfigError(f"{where} '{key}' must be a string")

    for key in ("with", "env"):
        if key in step and not isinstance(step[key] or {}, dict):
            raise PipelineConfigError(f"{where} '{key}' must be a mapping")

    if "timeout" in step and not isinstance(step["timeout"], int):
        raise PipelineConfigError(f"{where} 'timeout' must be an integer")

    kind = step.get("kind", "build")
    if kind not in ("setup", "build"):
        raise PipelineConfigError(f"{where} 'kind' must be 'setup' or 'build'")

    validated = {k: v for k, v in step.items() if k in ("name", "id", "run", "uses", "if", "timeout")}
    validated["with"] = step.get("with") or {}
    validated["env"] = step.get("env") or {}
    validated["kind"] = kind
    return validated

def check_dependencies(stages: List[Dict[str, Any]]):
    """Every stage name is unique and every `needs` entry names a declared stage."""
    names = set()
    for stage in stages:
        if stage["name"] in names:
            raise PipelineConfigError(f"Duplicate stage name '{stage['name']}'")
        names.add(stage["name"])

    for stage in stages:
        for dependency in stage["needs"]:
            if dependency not in names:
                raise PipelineConfigError(
                    f"Stage '{stage['name']}' needs undeclared stage '{dependency}'"
                )

def step_display_name(step: Dict[str, Any]) -> str:
    return step.get("name") or step.get("id") or step.get("uses") or step["run"].strip().split("\n")[0]

def step_invocation(step: Dict[str, Any]) -> str:
    if "uses" in step:
        return f"uses: {step['uses']}"
    return step["run"]
