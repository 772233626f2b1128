"""
Error taxonomy for pipeline execution.
"""

from typing import Iterable, Optional

class RelayError(Exception):
    """Base class for all orchestrator errors."""
    pass

class StepFailure(RelayError):
    """A step finished unsuccessfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None, logs: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.logs = logs

class ToolchainInstallError(StepFailure):
    """Environment setup failed."""
    pass

class BuildError(StepFailure):
    """A build command exited non-zero."""
    pass

class CacheError(RelayError):
    """Cache lookup or store failed. Never fatal."""
    pass

class ArtifactError(RelayError):
    pass

class DuplicateArtifact(ArtifactError):
    def __init__(self, name: str):
        super().__init__(f"Artifact '{name}' is already registered")
        self.name = name

class ArtifactNotFound(ArtifactError):
    def __init__(self, name: str):
        super().__init__(f"Artifact '{name}' not found")
        self.name = name

class PublishError(RelayError):
    """One or more objects failed to transfer to the sink."""

    def __init__(self, result):
        failed = ", ".join(sorted(result.failed))
        super().__init__(f"Failed to publish {len(result.failed)} object(s): {failed}")
        self.result = result

class PipelineDefinitionError(RelayError):
    """Raised when a pipeline definition is invalid."""
    pass

class UnknownDependency(PipelineDefinitionError):
    def __init__(self, stage: str, dependency: str):
        super().__init__(f"Stage '{stage}' needs unknown stage '{dependency}'")
        self.stage = stage
        self.dependency = dependency

class CycleError(PipelineDefinitionError):
    def __init__(self, stages: Iterable[str]):
        self.stages = sorted(stages)
        super().__init__(f"Dependency cycle between stages: {', '.join(self.stages)}")

class SinkError(RelayError):
    """The remote sink rejected a listing or transfer."""
    pass
