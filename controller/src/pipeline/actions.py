"""
Built-in step actions and the registry that resolves `uses:` references.

An action handler receives the step, its rendered `with:` configuration and
the stage's StepEnvironment, and returns the step outputs.
"""

import logging
import shutil
import subprocess
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from controller.src.errors import (
    CacheError,
    DuplicateArtifact,
    PipelineDefinitionError,
    PublishError,
    SinkError,
    ToolchainInstallError,
)
from controller.src.pipeline.artifacts import check_name
from controller.src.pipeline.cache import unpack_paths
from controller.src.pipeline.expressions import build_scope, render
from controller.src.pipeline.publisher import Publisher
from controller.src.pipeline.sinks import create_sink

logger = logging.getLogger(__name__)

ActionHandler = Callable[..., Dict[str, str]]

def parse_reference(reference: str) -> Tuple[str, Optional[str]]:
    """'owner/name@v2' -> ('owner/name', 'v2')"""
    name, _, version = reference.strip().partition("@")
    if not name:
        raise PipelineDefinitionError(f"Invalid action reference '{reference}'")
    return name, version or None

class ActionRegistry:

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: Optional[ActionHandler] = None):
        """Register a handler; usable as a decorator."""
        def decorator(func: ActionHandler) -> ActionHandler:
            self._handlers[name] = func
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def names(self) -> Iterable[str]:
        return sorted(self._handlers)

    def resolve(self, name: str) -> Tuple[str, ActionHandler]:
        """Find the handler for `name`, falling back to the part after the owner."""
        if name in self._handlers:
            return name, self._handlers[name]
        short = name.rsplit("/", 1)[-1]
        if short in self._handlers:
            return short, self._handlers[short]
        raise PipelineDefinitionError(f"Unknown action '{name}'")

    def get(self, name: str) -> ActionHandler:
        return self.resolve(name)[1]

def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return list(value)

def checkout(step, config: Dict[str, Any], env) -> Dict[str, str]:
    """Populate the workspace from the run's source directory or repository."""
    context = env.context
    target = env.workspace / config.get("path", "")
    target.mkdir(parents=True, exist_ok=True)

    if context.source_dir:
        shutil.copytree(
            context.source_dir,
            target,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(".git"),
        )
        return {"ref": context.ref, "sha": context.commit_sha}

    if not context.clone_url:
        raise ToolchainInstallError("Nothing to check out: run has no source directory or clone URL")

    revision = context.commit_sha or context.ref
    commands = [
        ["git", "init", "-q"],
        ["git", "remote", "add", "origin", context.clone_url],
        ["git", "fetch", "--depth", "1", "origin", revision],
        ["git", "checkout", "-q", "FETCH_HEAD"],
    ]
    try:
        for command in commands:
            subprocess.run(command, cwd=target, check=True, capture_output=True, timeout=300)
    except subprocess.TimeoutExpired as e:
        raise ToolchainInstallError(f"Checkout timed out: {' '.join(e.cmd)}") from e
    except subprocess.CalledProcessError as e:
        raise ToolchainInstallError(
            f"Checkout failed: {e.stderr.decode(errors='replace')}",
            exit_code=e.returncode,
        ) from e

    return {"ref": context.ref, "sha": context.commit_sha}

def cache(step, config: Dict[str, Any], env) -> Dict[str, str]:
    """
    Restore declared paths from the cache store.
    The save happens after the whole stage succeeds, unless the key was an exact hit.
    """
    key = str(config.get("key", ""))
    paths = _as_list(config.get("paths", config.get("path")))
    restore_keys = _as_list(config.get("restore-keys"))
    if not key or not paths:
        raise PipelineDefinitionError(f"Cache step '{step.name}' needs 'key' and 'paths'")

    hit = None
    if env.cache_store is not None:
        try:
            hit = env.cache_store.restore(key, restore_keys)
            if hit is not None:
                unpack_paths(hit.blob, paths, env.workspace)
        except CacheError as e:
            logger.warning(f"Cache restore for {key} failed, treating as a miss: {e}")
            hit = None

    if hit is None:
        logger.info(f"Cache miss for {key}")
    elif hit.exact:
        logger.info(f"Cache hit for {key}")
    else:
        logger.info(f"Partial cache hit for {key} via {hit.key}")

    if hit is None or not hit.exact:
        env.pending_cache_saves.append((key, paths))

    return {
        "cache-hit": "true" if hit is not None and hit.exact else "false",
        "cache-matched-key": hit.key if hit is not None else "",
    }

def upload_artifact(step, config: Dict[str, Any], env) -> Dict[str, str]:
    """Declare an artifact; it is registered once the stage succeeds."""
    name = config.get("name")
    path = config.get("path")
    if not name or not path:
        raise PipelineDefinitionError(f"upload-artifact step '{step.name}' needs 'name' and 'path'")
    name = str(name)
    check_name(name)
    if name in env.pending_outputs or name in env.stage.outputs:
        raise DuplicateArtifact(name)
    env.pending_outputs[name] = str(path)
    return {"artifact": name}

def download_artifacts(env, names: Iterable[str], path: str = "artifacts") -> Dict[str, str]:
    """Copy artifacts into `<workspace>/<path>/<name>`; '*' selects every artifact."""
    names = list(names)
    if not names or "*" in names:
        names = [ref.name for ref in env.artifact_store.list()]

    base = env.workspace / path
    for name in names:
        ref = env.artifact_store.get(name)
        dest = base / name
        if not ref.is_directory:
            dest = dest / ref.path.name
        env.artifact_store.materialize(name, dest)
        logger.info(f"Materialized artifact {name} into {dest}")
    return {"download-path": str(base)}

def download_artifact(step, config: Dict[str, Any], env) -> Dict[str, str]:
    names = _as_list(config.get("name"))
    return download_artifacts(env, names, config.get("path", "artifacts"))

def publish(step, config: Dict[str, Any], env) -> Dict[str, str]:
    """Mirror every registered artifact into the configured sink."""
    if not env.sink_config:
        raise SinkError("No sink configured for publish")

    sink_config = render(env.sink_config, build_scope(env.context, env.workspace))
    prefix = config.get("prefix", sink_config.get("prefix", ""))
    sink = create_sink(sink_config)
    try:
        result = Publisher(prefix=prefix).publish(env.artifact_store, sink, env.context)
    finally:
        sink.close()
    env.publish_result = result
    if not result.ok:
        raise PublishError(result)

    return {
        "transferred": str(len(result.transferred)),
        "unchanged": str(len(result.unchanged)),
    }

def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("checkout", checkout)
    registry.register("cache", cache)
    registry.register("upload-artifact", upload_artifact)
    registry.register("download-artifact", download_artifact)
    registry.register("publish", publish)
    return registry
