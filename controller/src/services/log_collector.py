"""
Collect step output from Kubernetes job pods.
"""

import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import get_core_api
from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

def latest_pod_name(job_name: str) -> Optional[str]:
    """Name of the most recently created pod of a job."""
    try:
        pods = get_core_api().list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        ).items
    except ApiException as e:
        logger.error(f"Failed to list pods of job {job_name}: {e}")
        return None

    if not pods:
        return None
    pods.sort(key=lambda p: (p.metadata.creation_timestamp is not None, p.metadata.creation_timestamp))
    return pods[-1].metadata.name

def collect_logs(job_name: str, limit_bytes: Optional[int] = None) -> str:
    """Combined output of a step job, or a note on why there is none."""
    pod_name = latest_pod_name(job_name)
    if not pod_name:
        return f"No pod was scheduled for job {job_name}"

    try:
        return get_core_api().read_namespaced_pod_log(
            name=pod_name,
            namespace=settings.k8s_namespace,
            limit_bytes=limit_bytes,
        )
    except ApiException as e:
        if e.status == 400:
            # container never started, e.g. image pull failure
            return f"Pod {pod_name} produced no output: {e.reason}"
        logger.error(f"Failed to read logs of {pod_name}: {e}")
        return f"Could not read logs of {pod_name}: {e.reason}"
