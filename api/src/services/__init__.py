from api.src.services.github import (
    RepositoryError,
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    cleanup_repo,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    matches_trigger,
    PipelineConfigError,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    get_run_status,
    get_queue_length,
    count_live_runs,
)

__all__ = [
    "RepositoryError",
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "cleanup_repo",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "matches_trigger",
    "PipelineConfigError",
    "enqueue_pipeline_run",
    "get_run_status",
    "get_queue_length",
    "count_live_runs",
]
