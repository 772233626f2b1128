"""
Kubernetes Job builder for shell steps.
"""

from kubernetes import client
from typing import Dict, Optional
import hashlib

from controller.src.config import get_settings

settings = get_settings()

WORKSPACE_VOLUME = "workspace"

def _safe(name: str, limit: int) -> str:
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = name.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    return safe_name[:limit].strip("-")

def build_job_name(run_id: str, stage_name: str, step_order: int, step_name: str) -> str:
    """Generate a unique job name."""
    # Use short hash of run_id for uniqueness
    run_hash = hashlib.md5(run_id.encode()).hexdigest()[:8]

    return f"rc-{run_hash}-{_safe(stage_name, 16)}-{step_order}-{_safe(step_name, 20)}".rstrip("-")

def build_job(
    run_id: str,
    stage_name: str,
    step_order: int,
    step_name: str,
    image: str,
    command: str,
    env_vars: Optional[Dict[str, str]] = None,
    working_dir: Optional[str] = None,
    timeout: Optional[int] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job for one shell step.
    """
    job_name = build_job_name(run_id, stage_name, step_order, step_name)

    env = [
        client.V1EnvVar(name=key, value=str(value))
        for key, value in (env_vars or {}).items()
    ]

    labels = {
        "app": "relayci",
        "run-id": _safe(run_id, 63),
        "stage": _safe(stage_name, 63),
        "step-order": str(step_order),
    }

    # Container spec
    container = client.V1Container(
        name="step",
        image=image,
        command=["/bin/sh", "-e", "-c"],
        args=[command],
        env=env,
        working_dir=working_dir,
        volume_mounts=[
            client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=settings.workspace_root),
        ],
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "2", "memory": "2Gi"},
        ),
    )

    # The stage workspace is shared between steps through this claim
    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
        volumes=[
            client.V1Volume(
                name=WORKSPACE_VOLUME,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=settings.k8s_workspace_claim,
                ),
            ),
        ],
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Don't retry failed jobs
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    job = client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

    return job

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
