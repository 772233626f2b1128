from api.src.models.pipeline import Repository, PipelineRun, StageRun, PipelineStep
from api.src.models.run import (
    PipelineRunResponse,
    StageResponse,
    StepResponse,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "StageRun",
    "PipelineStep",
    "PipelineRunResponse",
    "StageResponse",
    "StepResponse",
    "RepositoryResponse"
]
