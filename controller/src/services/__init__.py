from controller.src.services.executor import execute_job, execute_pipeline, run_pipeline
from controller.src.services.log_collector import collect_logs
from controller.src.services.runner import (
    CommandOutput,
    CommandRunner,
    KubernetesRunner,
    LocalRunner,
    create_runner,
)
from controller.src.services.status_reporter import (
    DatabaseReporter,
    RunReporter,
    update_run_status,
    update_stage_status,
)

__all__ = [
    "execute_job",
    "execute_pipeline",
    "run_pipeline",
    "collect_logs",
    "CommandOutput",
    "CommandRunner",
    "KubernetesRunner",
    "LocalRunner",
    "create_runner",
    "DatabaseReporter",
    "RunReporter",
    "update_run_status",
    "update_stage_status",
]
