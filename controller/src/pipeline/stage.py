"""
Runtime stage and step definitions.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from controller.src.models.context import PipelineContext

@dataclass
class Step:
    name: str
    id: Optional[str] = None
    condition: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    kind: str = "build"
    timeout: Optional[int] = None

@dataclass
class ShellStep(Step):
    command: str = ""

@dataclass
class ActionStep(Step):
    action: str = ""
    version: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

@dataclass
class Stage:
    name: str
    steps: List[Step] = field(default_factory=list)
    needs: FrozenSet[str] = frozenset()
    condition: Optional[Callable[[PipelineContext], bool]] = None
    condition_source: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    inputs: List[str] = field(default_factory=list)
    image: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
