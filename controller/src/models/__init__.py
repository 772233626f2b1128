from controller.src.models.context import PipelineContext
from controller.src.models.step import (
    StepStatus,
    StageStatus,
    StepConfig,
    StageConfig,
    SinkConfig,
    PipelineConfig,
    StepResult,
    StageResult,
    PipelineResult,
    PipelineJob,
)

__all__ = [
    "PipelineContext",
    "StepStatus",
    "StageStatus",
    "StepConfig",
    "StageConfig",
    "SinkConfig",
    "PipelineConfig",
    "StepResult",
    "StageResult",
    "PipelineResult",
    "PipelineJob",
]
