"""
Runs the steps of one stage in order and reports a StageResult.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from controller.src.errors import (
    ArtifactError,
    BuildError,
    CacheError,
    DuplicateArtifact,
    RelayError,
    StepFailure,
    ToolchainInstallError,
)
from controller.src.models.context import PipelineContext
from controller.src.models.step import StageResult, StageStatus, StepResult, StepStatus
from controller.src.pipeline.actions import ActionRegistry, default_registry, download_artifacts
from controller.src.pipeline.artifacts import ArtifactStore, check_name
from controller.src.pipeline.cache import CacheStore, pack_paths
from controller.src.pipeline.expressions import Scope, build_scope, compile_condition, render
from controller.src.pipeline.publisher import PublishResult
from controller.src.pipeline.stage import ActionStep, ShellStep, Stage, Step

logger = logging.getLogger(__name__)

OUTPUT_DIR = ".relayci"

@dataclass
class StepEnvironment:
    """Mutable state shared by the steps of one stage execution."""
    stage: Stage
    context: PipelineContext
    workspace: Path
    artifact_store: ArtifactStore
    cache_store: Optional[CacheStore]
    sink_config: Optional[Dict[str, Any]] = None
    step_outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    pending_cache_saves: List[Tuple[str, List[str]]] = field(default_factory=list)
    pending_outputs: Dict[str, str] = field(default_factory=dict)
    publish_result: Optional[PublishResult] = None

    def scope(self) -> Scope:
        return build_scope(
            self.context,
            workspace=self.workspace,
            steps=self.step_outputs,
            env={k: str(v) for k, v in self.stage.env.items()},
        )

def read_outputs(path: Path) -> Dict[str, str]:
    """Parse `key=value` lines a shell step wrote to its output file."""
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text().splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            outputs[key.strip()] = value
    return outputs

class StageExecutor:

    def __init__(
        self,
        runner,
        workspace_root,
        actions: Optional[ActionRegistry] = None,
        sink_config: Optional[Dict[str, Any]] = None,
        step_timeout: Optional[int] = None,
    ):
        self.runner = runner
        self.workspace_root = Path(workspace_root)
        self.actions = actions or default_registry()
        self.sink_config = sink_config
        self.step_timeout = step_timeout

    def workspace_for(self, stage: Stage, context: PipelineContext) -> Path:
        return self.workspace_root / context.run_id / stage.name

    def run(
        self,
        stage: Stage,
        context: PipelineContext,
        artifact_store: ArtifactStore,
        cache_store: Optional[CacheStore] = None,
    ) -> StageResult:
        workspace = self.workspace_for(stage, context)
        workspace.mkdir(parents=True, exist_ok=True)

        env = StepEnvironment(
            stage=stage,
            context=context,
            workspace=workspace,
            artifact_store=artifact_store,
            cache_store=cache_store,
            sink_config=self.sink_config,
        )
        result = StageResult(
            name=stage.name,
            status=StageStatus.RUNNING,
            started_at=datetime.utcnow(),
        )
        logger.info(f"Run {context.run_id}: starting stage {stage.name} with {len(stage.steps)} steps")

        if stage.inputs:
            try:
                download_artifacts(env, stage.inputs)
            except ArtifactError as e:
                return self._fail(result, env, None, e)

        for i, step in enumerate(stage.steps):
            step_result = self._run_step(i, step, env)
            result.steps.append(step_result)

            if step_result.status == StepStatus.FAILED:
                result.status = StageStatus.FAILED
                result.failing_step_index = i
                result.error = step_result.error
                result.error_type = step_result.error_type
                return self._finish(result, env)

        self._save_caches(env)

        try:
            self._register_outputs(result, env)
        except ArtifactError as e:
            return self._fail(result, env, None, e)

        result.status = StageStatus.SUCCEEDED
        return self._finish(result, env)

    def _register_outputs(self, result: StageResult, env: StepEnvironment):
        """Register every declared output, or none of them."""
        store = env.artifact_store
        outputs = {**env.stage.outputs, **env.pending_outputs}
        for name, path in outputs.items():
            check_name(name)
            if name in store:
                raise DuplicateArtifact(name)
            if not (env.workspace / path).exists():
                raise ArtifactError(f"Output path {path} for artifact '{name}' does not exist")

        registered = []
        try:
            for name, path in outputs.items():
                store.register(name, env.workspace / path, stage=env.stage.name)
                registered.append(name)
        except ArtifactError:
            for name in registered:
                store.discard(name)
            raise
        result.artifacts.extend(registered)

    def _fail(self, result: StageResult, env: StepEnvironment, index: Optional[int], error: Exception) -> StageResult:
        result.status = StageStatus.FAILED
        result.failing_step_index = index
        result.error = env.context.mask(str(error))
        result.error_type = type(error).__name__
        return self._finish(result, env)

    def _finish(self, result: StageResult, env: StepEnvironment) -> StageResult:
        result.finished_at = datetime.utcnow()
        if env.publish_result is not None:
            result.published = env.publish_result.to_dict()

        run_id = env.context.run_id
        if result.status == StageStatus.FAILED:
            where = f" at step {result.failing_step_index}" if result.failing_step_index is not None else ""
            logger.error(f"Run {run_id}: stage {result.name} failed{where}: {result.error_type}: {result.error}")
        else:
            logger.info(f"Run {run_id}: stage {result.name} {result.status.value}")
        return result

    def _run_step(self, index: int, step: Step, env: StepEnvironment) -> StepResult:
        context = env.context
        step_result = StepResult(
            step_order=index,
            name=step.name,
            status=StepStatus.RUNNING,
            started_at=datetime.utcnow(),
        )

        try:
            scope = env.scope()
            if step.condition and not compile_condition(step.condition)(scope):
                logger.info(f"Run {context.run_id}: skipping step {index} ({step.name}), condition is false")
                step_result.status = StepStatus.SKIPPED
                step_result.finished_at = datetime.utcnow()
                return step_result

            logger.info(f"Run {context.run_id}: executing step {index} of {env.stage.name}: {step.name}")
            if isinstance(step, ShellStep):
                outputs, logs = self._run_shell(index, step, env, scope)
            elif isinstance(step, ActionStep):
                handler = self.actions.get(step.action)
                outputs, logs = handler(step, render(step.config, scope), env), None
            else:
                raise TypeError(f"Unsupported step type {type(step).__name__}")

            if step.id:
                env.step_outputs[step.id] = outputs
            step_result.status = StepStatus.SUCCEEDED
            step_result.outputs = outputs
            step_result.logs = context.mask(logs)

        except StepFailure as e:
            step_result.status = StepStatus.FAILED
            step_result.logs = context.mask(e.logs)
            step_result.error = context.mask(str(e))
            step_result.error_type = type(e).__name__
        except RelayError as e:
            step_result.status = StepStatus.FAILED
            step_result.error = context.mask(str(e))
            step_result.error_type = type(e).__name__
        except Exception as e:
            logger.exception(f"Run {context.run_id}: step {index} ({step.name}) raised unexpectedly")
            step_result.status = StepStatus.FAILED
            step_result.error = context.mask(str(e))
            step_result.error_type = type(e).__name__

        step_result.finished_at = datetime.utcnow()
        return step_result

    def _run_shell(self, index: int, step: ShellStep, env: StepEnvironment, scope: Scope):
        context = env.context
        output_file = env.workspace / OUTPUT_DIR / f"step-{index}.out"
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.unlink(missing_ok=True)

        step_env = {k: str(v) for k, v in context.env.items()}
        step_env.update({k: str(v) for k, v in render(env.stage.env, scope).items()})
        step_env.update({k: str(v) for k, v in render(step.env, scope).items()})
        step_env.update({
            "RELAYCI_RUN_ID": context.run_id,
            "RELAYCI_REF": context.ref,
            "RELAYCI_SHA": context.commit_sha,
            "RELAYCI_STAGE": env.stage.name,
            "RELAYCI_STEP_ORDER": str(index),
            "RELAYCI_STEP_NAME": step.name,
            "RELAYCI_WORKSPACE": str(env.workspace),
            "RELAYCI_OUTPUT": str(output_file),
        })

        command = render(step.command, scope)
        out = self.runner.run(
            command,
            cwd=env.workspace,
            env=step_env,
            image=env.stage.image,
            run_id=context.run_id,
            stage=env.stage.name,
            step_order=index,
            step_name=step.name,
            timeout=step.timeout or self.step_timeout,
        )

        if out.exit_code != 0:
            error_class = ToolchainInstallError if step.kind == "setup" else BuildError
            raise error_class(
                f"Command exited with status {out.exit_code}",
                exit_code=out.exit_code,
                logs=out.output,
            )
        return read_outputs(output_file), out.output

    def _save_caches(self, env: StepEnvironment):
        if env.cache_store is None:
            return
        for key, paths in env.pending_cache_saves:
            try:
                if env.cache_store.store(key, pack_paths(paths, env.workspace)):
                    logger.info(f"Saved cache {key}")
                else:
                    logger.info(f"Cache {key} already exists, not saving")
            except CacheError as e:
                logger.warning(f"Failed to save cache {key}: {e}")
