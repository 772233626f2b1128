"""
Pipeline definition and execution result models.
"""

from pydantic import BaseModel, Field, model_validator
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"  # a predecessor failed, never attempted

class StepConfig(BaseModel):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    condition: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, Any] = {}
    kind: str = "build"  # "setup" failures raise ToolchainInstallError
    timeout: Optional[int] = None

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def check_invocation(self):
        if (self.run is None) == (self.uses is None):
            raise ValueError("step must define exactly one of 'run' or 'uses'")
        if self.kind not in ("setup", "build"):
            raise ValueError(f"step kind must be 'setup' or 'build', got '{self.kind}'")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.uses or (self.run or "").strip().split("\n")[0]

class StageConfig(BaseModel):
    name: str
    image: Optional[str] = None
    needs: List[str] = []
    condition: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, Any] = {}
    steps: List[StepConfig]
    outputs: Dict[str, str] = {}
    inputs: List[str] = []

    class Config:
        populate_by_name = True

    @model_validator(mode="before")
    @classmethod
    def normalize_needs(cls, data):
        if isinstance(data, dict) and isinstance(data.get("needs"), str):
            data = {**data, "needs": [data["needs"]]}
        return data

class SinkConfig(BaseModel):
    type: str = "http"
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""
    region: str = "auto"
    bucket: str = ""
    prefix: str = ""
    path: str = ""

class PipelineConfig(BaseModel):
    name: str = "Unnamed Pipeline"
    env: Dict[str, Any] = {}
    sink: Optional[SinkConfig] = None
    stages: List[StageConfig]

    class Config:
        extra = "ignore"

    @model_validator(mode="before")
    @classmethod
    def stages_from_mapping(cls, data):
        """Accept `stages: {name: {...}}` as well as a list of named stages."""
        if isinstance(data, dict):
            # YAML 1.1 reads a bare `on:` key as boolean True
            data = {k: v for k, v in data.items() if isinstance(k, str)}
        if isinstance(data, dict) and isinstance(data.get("stages"), dict):
            stages = [
                {**(body or {}), "name": name}
                for name, body in data["stages"].items()
            ]
            data = {**data, "stages": stages}
        return data

class StepResult(BaseModel):
    step_order: int
    name: str
    status: StepStatus
    logs: Optional[str] = None
    outputs: Dict[str, str] = {}
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

class StageResult(BaseModel):
    name: str
    status: StageStatus
    steps: List[StepResult] = []
    failing_step_index: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    artifacts: List[str] = []
    published: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def satisfied(self) -> bool:
        """Whether dependents may run after this stage."""
        return self.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)

class PipelineResult(BaseModel):
    run_id: str
    status: StepStatus
    stages: Dict[str, StageResult] = {}
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    def first_failure(self) -> Optional[Tuple[str, Optional[int]]]:
        """Name and failing step index of the first failed stage."""
        for name, stage in self.stages.items():
            if stage.status == StageStatus.FAILED:
                return name, stage.failing_step_index
        return None

class PipelineJob(BaseModel):
    run_id: str
    config: Dict[str, Any]
    repo_info: Dict[str, Any]
    queued_at: str
