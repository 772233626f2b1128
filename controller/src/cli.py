"""
Run a pipeline definition on the local machine.
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from controller.src.config import get_settings, load_secrets
from controller.src.errors import PipelineDefinitionError
from controller.src.models.context import PipelineContext
from controller.src.models.step import PipelineResult
from controller.src.pipeline.artifacts import ArtifactStore
from controller.src.pipeline.cache import FileCacheStore
from controller.src.pipeline.loader import build_pipeline, load_definition
from controller.src.pipeline.stage_executor import StageExecutor
from controller.src.services.executor import run_pipeline
from controller.src.services.runner import LocalRunner

logger = logging.getLogger(__name__)

def _parse_env(pairs: List[str]) -> Dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{pair}'")
        env[key] = value
    return env

def run_local(args: argparse.Namespace) -> PipelineResult:
    settings = get_settings()
    pipeline = build_pipeline(load_definition(args.definition))

    workspace = Path(args.workspace).resolve()
    run_id = args.run_id or str(uuid.uuid4())
    context = PipelineContext(
        run_id=run_id,
        ref=args.ref,
        commit_sha=args.sha,
        event=args.event,
        repository=args.repository,
        source_dir=str(Path(args.source).resolve()),
        runner_os=settings.runner_os,
        env=_parse_env(args.env),
        secrets=load_secrets(settings),
    )

    executor = StageExecutor(
        runner=LocalRunner(),
        workspace_root=workspace / "work",
        sink_config=pipeline.sink or settings.default_sink(),
        step_timeout=args.timeout or settings.step_timeout,
    )
    return run_pipeline(
        pipeline,
        context,
        executor,
        ArtifactStore(workspace / "artifacts" / run_id),
        cache_store=FileCacheStore(workspace / "cache"),
    )

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a RelayCI pipeline locally")
    parser.add_argument("definition", help="Path to the pipeline definition (YAML).")
    parser.add_argument("--ref", default="refs/heads/main", help="Git ref being built.")
    parser.add_argument("--sha", default="", help="Commit SHA being built.")
    parser.add_argument("--event", default="push", help="Triggering event name.")
    parser.add_argument("--repository", default="", help="Repository name, e.g. owner/repo.")
    parser.add_argument(
        "--source",
        default=".",
        help="Source tree copied by the checkout action.",
    )
    parser.add_argument(
        "--workspace",
        default=".relayci",
        help="Directory used for stage workspaces, cache and artifacts.",
    )
    parser.add_argument("--run-id", default=None, help="Run identifier (random by default).")
    parser.add_argument("--timeout", type=int, default=None, help="Per-step timeout in seconds.")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Pipeline-level environment variable; may be repeated.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser

def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    try:
        result = run_local(args)
    except (PipelineDefinitionError, argparse.ArgumentTypeError, OSError) as e:
        logger.error(str(e))
        sys.exit(2)

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    sys.exit(0 if result.succeeded else 1)

if __name__ == "__main__":
    main()
