"""
Stage dependency graph: execution batches and run/skip decisions.
"""

import logging
from typing import Dict, List, Sequence

from controller.src.errors import CycleError, PipelineDefinitionError, UnknownDependency
from controller.src.models.context import PipelineContext
from controller.src.pipeline.stage import Stage

logger = logging.getLogger(__name__)

def resolve(stages: Sequence[Stage]) -> List[List[Stage]]:
    """
    Group stages into batches. Every stage in batch i depends only on stages
    in earlier batches; stages in the same batch are independent. Within a
    batch, stages keep their declaration order.
    """
    by_name: Dict[str, Stage] = {}
    for stage in stages:
        if stage.name in by_name:
            raise PipelineDefinitionError(f"Duplicate stage name '{stage.name}'")
        by_name[stage.name] = stage

    for stage in stages:
        for dependency in sorted(stage.needs):
            if dependency not in by_name:
                raise UnknownDependency(stage.name, dependency)

    remaining = {stage.name: set(stage.needs) for stage in stages}
    batches: List[List[Stage]] = []

    while remaining:
        ready = [stage for stage in stages if stage.name in remaining and not remaining[stage.name]]
        if not ready:
            raise CycleError(remaining.keys())

        batches.append(ready)
        for stage in ready:
            del remaining[stage.name]
        done = {stage.name for stage in ready}
        for pending in remaining.values():
            pending -= done

    return batches

def should_run(stage: Stage, context: PipelineContext) -> bool:
    """Evaluate the stage's run-condition. Stages without one always run."""
    if stage.condition is None:
        return True
    result = bool(stage.condition(context))
    if not result:
        logger.info(f"Stage {stage.name} condition is false: {stage.condition_source}")
    return result
