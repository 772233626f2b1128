"""
Pipeline executor - runs the stage graph batch by batch.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from controller.src.config import Settings, get_settings, load_secrets
from controller.src.errors import PipelineDefinitionError, RelayError
from controller.src.models.context import PipelineContext
from controller.src.models.step import (
    PipelineResult,
    StageResult,
    StageStatus,
    StepStatus,
)
from controller.src.pipeline.artifacts import ArtifactStore
from controller.src.pipeline.cache import CacheStore, FileCacheStore, RedisCacheStore
from controller.src.pipeline.graph import resolve, should_run
from controller.src.pipeline.loader import Pipeline, build_pipeline, parse_definition
from controller.src.pipeline.stage import Stage
from controller.src.pipeline.stage_executor import StageExecutor
from controller.src.services.runner import create_runner
from controller.src.services.status_reporter import DatabaseReporter, RunReporter

logger = logging.getLogger(__name__)

def _run_stage(
    executor: StageExecutor,
    stage: Stage,
    context: PipelineContext,
    artifact_store: ArtifactStore,
    cache_store: Optional[CacheStore],
) -> StageResult:
    try:
        return executor.run(stage, context, artifact_store, cache_store)
    except Exception as e:
        logger.exception(f"Stage {stage.name} of run {context.run_id} crashed")
        return StageResult(
            name=stage.name,
            status=StageStatus.FAILED,
            error=context.mask(str(e)),
            error_type=type(e).__name__,
            finished_at=datetime.utcnow(),
        )

async def execute_pipeline(
    pipeline: Pipeline,
    context: PipelineContext,
    executor: StageExecutor,
    artifact_store: ArtifactStore,
    cache_store: Optional[CacheStore] = None,
    reporter: Optional[RunReporter] = None,
) -> PipelineResult:
    """
    Execute a pipeline run.
    Stages of one batch run concurrently; a batch starts only after every
    stage of the previous batch reached a terminal state. A failed stage
    blocks its dependents but lets independent stages finish.
    """
    reporter = reporter or RunReporter()
    run_id = context.run_id
    result = PipelineResult(run_id=run_id, status=StepStatus.RUNNING, started_at=datetime.utcnow())

    try:
        batches = resolve(pipeline.stages)
    except PipelineDefinitionError as e:
        logger.error(f"Pipeline run {run_id} has an invalid stage graph: {e}")
        result.status = StepStatus.FAILED
        result.error = str(e)
        result.finished_at = datetime.utcnow()
        reporter.run_finished(run_id, result)
        return result

    logger.info(f"Starting pipeline run {run_id} ({pipeline.name}) with {len(batches)} batches")
    reporter.run_started(run_id)

    for i, batch in enumerate(batches):
        outcomes: Dict[str, StageResult] = {}
        runnable: List[Stage] = []

        for stage in batch:
            blocked_by = [d for d in sorted(stage.needs) if not result.stages[d].satisfied]
            if blocked_by:
                logger.warning(f"Stage {stage.name} not runnable, blocked by {', '.join(blocked_by)}")
                outcomes[stage.name] = StageResult(
                    name=stage.name,
                    status=StageStatus.BLOCKED,
                    error=f"Blocked by {', '.join(blocked_by)}",
                )
                continue

            try:
                runs = should_run(stage, context)
            except RelayError as e:
                logger.error(f"Stage {stage.name} condition could not be evaluated: {e}")
                outcomes[stage.name] = StageResult(
                    name=stage.name,
                    status=StageStatus.FAILED,
                    error=context.mask(str(e)),
                    error_type=type(e).__name__,
                )
                continue

            if runs:
                runnable.append(stage)
            else:
                outcomes[stage.name] = StageResult(name=stage.name, status=StageStatus.SKIPPED)

        logger.info(f"Run {run_id} batch {i}: running {[s.name for s in runnable]}")
        finished = await asyncio.gather(*[
            asyncio.to_thread(_run_stage, executor, stage, context, artifact_store, cache_store)
            for stage in runnable
        ])
        for stage, stage_result in zip(runnable, finished):
            outcomes[stage.name] = stage_result

        # Keep declaration order so the first failure is reported first
        for stage in batch:
            result.stages[stage.name] = outcomes[stage.name]
            reporter.stage_finished(run_id, outcomes[stage.name])

    failed = any(
        stage.status in (StageStatus.FAILED, StageStatus.BLOCKED)
        for stage in result.stages.values()
    )
    result.status = StepStatus.FAILED if failed else StepStatus.SUCCEEDED
    result.finished_at = datetime.utcnow()

    failure = result.first_failure()
    if failure:
        stage_name, step_index = failure
        logger.error(f"Pipeline run {run_id} failed in stage {stage_name} at step {step_index}")
    logger.info(f"Pipeline run {run_id} finished with status: {result.status.value}")

    reporter.run_finished(run_id, result)
    return result

def run_pipeline(*args, **kwargs) -> PipelineResult:
    """Synchronous wrapper around execute_pipeline."""
    return asyncio.run(execute_pipeline(*args, **kwargs))

def create_cache_store(settings: Settings) -> CacheStore:
    if settings.cache_backend == "redis":
        return RedisCacheStore.from_url(settings.redis_url)
    return FileCacheStore(settings.cache_dir)

def build_context(job_data: Dict[str, Any], settings: Settings) -> PipelineContext:
    repo_info = job_data.get("repo_info", {})
    branch = repo_info.get("branch", "")
    return PipelineContext(
        run_id=job_data["run_id"],
        ref=repo_info.get("ref") or (f"refs/heads/{branch}" if branch else ""),
        commit_sha=repo_info.get("commit_sha", ""),
        event=repo_info.get("event", "push"),
        repository=repo_info.get("repo_full_name", ""),
        clone_url=repo_info.get("clone_url") or None,
        runner_os=settings.runner_os,
        secrets=load_secrets(settings),
    )

async def execute_job(job_data: Dict[str, Any]) -> bool:
    """
    Execute a queued pipeline run.
    Returns True if the pipeline succeeded, False otherwise.
    """
    settings = get_settings()
    run_id = job_data["run_id"]
    reporter = DatabaseReporter()

    try:
        pipeline = build_pipeline(parse_definition(job_data["config"]))
    except PipelineDefinitionError as e:
        logger.error(f"Pipeline run {run_id} has an invalid definition: {e}")
        reporter.run_finished(
            run_id,
            PipelineResult(
                run_id=run_id,
                status=StepStatus.FAILED,
                error=str(e),
                finished_at=datetime.utcnow(),
            ),
        )
        return False

    context = build_context(job_data, settings)
    executor = StageExecutor(
        runner=create_runner(settings.runner),
        workspace_root=settings.workspace_root,
        sink_config=pipeline.sink or settings.default_sink(),
        step_timeout=settings.step_timeout,
    )
    artifact_store = ArtifactStore(Path(settings.artifact_root) / run_id)

    result = await execute_pipeline(
        pipeline,
        context,
        executor,
        artifact_store,
        cache_store=create_cache_store(settings),
        reporter=reporter,
    )
    return result.succeeded
