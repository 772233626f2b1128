"""
Staging area for named artifacts handed between stages.
"""

import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from controller.src.errors import ArtifactError, ArtifactNotFound, DuplicateArtifact

logger = logging.getLogger(__name__)

def check_name(name: str):
    """Artifact names are single path components."""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ArtifactError(f"Invalid artifact name '{name}'")

@dataclass(frozen=True)
class ArtifactRef:
    name: str
    path: Path
    kind: str  # "file" or "directory"
    stage: str = ""

    @property
    def is_directory(self) -> bool:
        return self.kind == "directory"

class ArtifactStore:
    """
    Artifacts of one pipeline run, kept under `<root>/<name>`.
    Retrieval hands out the stored path; nothing is copied unless
    `materialize` is called.
    """

    def __init__(self, root):
        self.root = Path(root)
        self._refs: Dict[str, ArtifactRef] = {}
        self._lock = threading.Lock()

    def put(self, name: str, ref: ArtifactRef):
        check_name(name)
        with self._lock:
            if name in self._refs:
                raise DuplicateArtifact(name)
            self._refs[name] = ref
        logger.info(f"Registered artifact {name} ({ref.kind}) from stage {ref.stage or '-'}")

    def get(self, name: str) -> ArtifactRef:
        with self._lock:
            ref = self._refs.get(name)
        if ref is None:
            raise ArtifactNotFound(name)
        return ref

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._refs

    def list(self) -> List[ArtifactRef]:
        with self._lock:
            return sorted(self._refs.values(), key=lambda ref: ref.name)

    def register(self, name: str, source, stage: str = "") -> ArtifactRef:
        """Move `source` into the store and register it under `name`."""
        check_name(name)
        source = Path(source)
        if not source.exists():
            raise ArtifactError(f"Output path {source} for artifact '{name}' does not exist")
        with self._lock:
            if name in self._refs:
                raise DuplicateArtifact(name)
            target = self.root / name
            if target.exists():
                raise DuplicateArtifact(name)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
            ref = ArtifactRef(
                name=name,
                path=target,
                kind="directory" if target.is_dir() else "file",
                stage=stage,
            )
            self._refs[name] = ref
        logger.info(f"Registered artifact {name} ({ref.kind}) from stage {stage or '-'}")
        return ref

    def discard(self, name: str):
        """Drop artifact `name` and its stored files, if present."""
        with self._lock:
            ref = self._refs.pop(name, None)
        if ref is None:
            return
        if ref.path.is_dir():
            shutil.rmtree(ref.path, ignore_errors=True)
        else:
            ref.path.unlink(missing_ok=True)
        logger.info(f"Discarded artifact {name}")

    def materialize(self, name: str, dest) -> Path:
        """Copy artifact `name` to `dest`."""
        ref = self.get(name)
        dest = Path(dest)
        if ref.is_directory:
            shutil.copytree(ref.path, dest, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(ref.path, dest)
        return dest
