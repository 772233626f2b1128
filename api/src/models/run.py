from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID

class StepResponse(BaseModel):
    id: UUID
    stage_name: str
    name: str
    invocation: str
    status: str
    step_order: int
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class StageResponse(BaseModel):
    id: UUID
    name: str
    stage_order: int
    needs: List[str] = []
    status: str
    failing_step_index: Optional[int] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    ref: str
    branch: str

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    status: str
    triggered_by: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    stages: List[StageResponse] = []
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
