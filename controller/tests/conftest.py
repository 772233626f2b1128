"""Shared fixtures for controller tests."""

import uuid

import pytest

from controller.src.models.context import PipelineContext
from controller.src.pipeline.artifacts import ArtifactStore
from controller.src.pipeline.cache import FileCacheStore
from controller.src.pipeline.loader import build_pipeline, parse_definition
from controller.src.pipeline.stage_executor import StageExecutor
from controller.src.services.executor import run_pipeline
from controller.src.services.runner import LocalRunner

@pytest.fixture
def make_context(tmp_path):
    def factory(ref="refs/heads/main", **kwargs):
        kwargs.setdefault("run_id", str(uuid.uuid4()))
        kwargs.setdefault("commit_sha", "0123456789abcdef")
        return PipelineContext(ref=ref, **kwargs)
    return factory

@pytest.fixture
def run_definition(tmp_path):
    """Run a YAML definition locally; cache and sink persist across calls."""
    def run(definition, context):
        pipeline = build_pipeline(parse_definition(definition))
        executor = StageExecutor(
            runner=LocalRunner(),
            workspace_root=tmp_path / "work",
            sink_config=pipeline.sink,
        )
        return run_pipeline(
            pipeline,
            context,
            executor,
            ArtifactStore(tmp_path / "artifacts" / context.run_id),
            cache_store=FileCacheStore(tmp_path / "cache"),
        )
    return run
