"""
Idempotent publish of the artifact set to a remote sink.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from controller.src.errors import SinkError
from controller.src.models.context import PipelineContext
from controller.src.pipeline.artifacts import ArtifactRef, ArtifactStore
from controller.src.pipeline.sinks import Sink, sha256_file

logger = logging.getLogger(__name__)

@dataclass
class PublishResult:
    transferred: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "transferred": list(self.transferred),
            "unchanged": list(self.unchanged),
            "failed": dict(self.failed),
        }

class Publisher:
    """
    Mirror every artifact as `<prefix>/<artifact>/<relative path>`.
    Objects whose digest already matches the sink are not transferred.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix.strip("/")

    def object_key(self, ref: ArtifactRef, relative: str) -> str:
        return "/".join(part for part in (self.prefix, ref.name, relative) if part)

    def objects(self, ref: ArtifactRef) -> List[Tuple[str, Path]]:
        if not ref.is_directory:
            return [(self.object_key(ref, ref.path.name), ref.path)]
        return [
            (self.object_key(ref, path.relative_to(ref.path).as_posix()), path)
            for path in sorted(ref.path.rglob("*"))
            if path.is_file()
        ]

    def publish(
        self,
        artifact_store: ArtifactStore,
        sink: Sink,
        context: PipelineContext,
    ) -> PublishResult:
        result = PublishResult()
        remote = sink.list_digests(self.prefix)

        for ref in artifact_store.list():
            for key, path in self.objects(ref):
                try:
                    digest = sha256_file(path)
                    if remote.get(key) == digest:
                        result.unchanged.append(key)
                        continue
                    sink.put(key, path, digest)
                    result.transferred.append(key)
                except (SinkError, OSError) as e:
                    # Objects are independent, keep going
                    result.failed[key] = context.mask(str(e))
                    logger.error(f"Run {context.run_id}: failed to publish {key}: {result.failed[key]}")

        logger.info(
            f"Run {context.run_id}: published {len(result.transferred)} object(s), "
            f"{len(result.unchanged)} unchanged, {len(result.failed)} failed"
        )
        return result
