from controller.src.pipeline.actions import ActionRegistry, default_registry
from controller.src.pipeline.artifacts import ArtifactRef, ArtifactStore
from controller.src.pipeline.cache import CacheLookup, CacheStore, FileCacheStore, RedisCacheStore
from controller.src.pipeline.graph import resolve, should_run
from controller.src.pipeline.loader import Pipeline, build_pipeline, load_definition, parse_definition
from controller.src.pipeline.publisher import PublishResult, Publisher
from controller.src.pipeline.sinks import DirectorySink, HttpObjectSink, Sink, create_sink
from controller.src.pipeline.stage import ActionStep, ShellStep, Stage, Step
from controller.src.pipeline.stage_executor import StageExecutor

__all__ = [
    "ActionRegistry",
    "default_registry",
    "ArtifactRef",
    "ArtifactStore",
    "CacheLookup",
    "CacheStore",
    "FileCacheStore",
    "RedisCacheStore",
    "resolve",
    "should_run",
    "Pipeline",
    "build_pipeline",
    "load_definition",
    "parse_definition",
    "PublishResult",
    "Publisher",
    "DirectorySink",
    "HttpObjectSink",
    "Sink",
    "create_sink",
    "ActionStep",
    "ShellStep",
    "Stage",
    "Step",
    "StageExecutor",
]
