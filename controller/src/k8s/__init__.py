from controller.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    MANAGED_BY,
)
from controller.src.k8s.job_builder import (
    build_job,
    build_job_name,
    get_job_status,
)

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "MANAGED_BY",
    "build_job",
    "build_job_name",
    "get_job_status",
]
