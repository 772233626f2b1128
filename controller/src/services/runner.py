"""
Command runners - where shell steps actually execute.
"""

import logging
import os
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s import build_job, get_batch_api, get_job_status
from controller.src.services.log_collector import collect_logs

logger = logging.getLogger(__name__)
settings = get_settings()

@dataclass
class CommandOutput:
    exit_code: int
    output: str

class CommandRunner(ABC):

    @abstractmethod
    def run(
        self,
        command: str,
        cwd: Path,
        env: Dict[str, str],
        image: Optional[str] = None,
        run_id: str = "",
        stage: str = "",
        step_order: int = 0,
        step_name: str = "",
        timeout: Optional[int] = None,
    ) -> CommandOutput:
        """Run `command` in `cwd`; never raises for a non-zero exit."""

class LocalRunner(CommandRunner):
    """Run commands in a subprocess on the controller host."""

    def __init__(self, shell: Optional[str] = None, inherit_env: bool = True):
        self.shell = shell or shutil.which("bash") or "/bin/sh"
        self.inherit_env = inherit_env

    def run(
        self,
        command: str,
        cwd: Path,
        env: Dict[str, str],
        image: Optional[str] = None,
        run_id: str = "",
        stage: str = "",
        step_order: int = 0,
        step_name: str = "",
        timeout: Optional[int] = None,
    ) -> CommandOutput:
        full_env = {**os.environ, **env} if self.inherit_env else dict(env)

        try:
            proc = subprocess.run(
                [self.shell, "-e", "-c", command],
                cwd=str(cwd),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            partial = e.output or b""
            if isinstance(partial, bytes):
                partial = partial.decode(errors="replace")
            logger.error(f"Step {step_order} ({step_name}) timed out after {timeout}s")
            return CommandOutput(exit_code=124, output=f"{partial}\nCommand timed out after {timeout}s")
        except OSError as e:
            return CommandOutput(exit_code=127, output=f"Failed to start {self.shell}: {e}")

        return CommandOutput(
            exit_code=proc.returncode,
            output=proc.stdout.decode(errors="replace"),
        )

class KubernetesRunner(CommandRunner):
    """
    Run each command as a Kubernetes Job. The stage workspace lives on a
    shared volume mounted at the same path in the controller and the job pod.
    """

    def __init__(self, default_image: str = "ubuntu:24.04", poll_interval: float = 2):
        self.default_image = default_image
        self.poll_interval = poll_interval

    def run(
        self,
        command: str,
        cwd: Path,
        env: Dict[str, str],
        image: Optional[str] = None,
        run_id: str = "",
        stage: str = "",
        step_order: int = 0,
        step_name: str = "",
        timeout: Optional[int] = None,
    ) -> CommandOutput:
        batch_v1 = get_batch_api()

        job = build_job(
            run_id=run_id,
            stage_name=stage,
            step_order=step_order,
            step_name=step_name,
            image=image or self.default_image,
            command=command,
            env_vars=env,
            working_dir=str(cwd),
            timeout=timeout,
        )
        job_name = job.metadata.name
        logger.info(f"Creating job {job_name}")

        try:
            batch_v1.create_namespaced_job(
                namespace=settings.k8s_namespace,
                body=job,
            )
        except ApiException as e:
            if e.status == 409:
                # Job already exists, delete and recreate
                logger.warning(f"Job {job_name} already exists, deleting...")
                batch_v1.delete_namespaced_job(
                    name=job_name,
                    namespace=settings.k8s_namespace,
                    body={},
                    propagation_policy="Foreground",
                )
                time.sleep(self.poll_interval)
                batch_v1.create_namespaced_job(
                    namespace=settings.k8s_namespace,
                    body=job,
                )
            else:
                return CommandOutput(exit_code=1, output=f"Failed to create job {job_name}: {e.reason}")

        succeeded = self.wait_for_job(job_name, timeout)
        logs = collect_logs(job_name)
        return CommandOutput(exit_code=0 if succeeded else 1, output=logs)

    def wait_for_job(self, job_name: str, timeout: Optional[int]) -> bool:
        """
        Wait for a job to complete.
        Returns True if succeeded, False if failed or timed out.
        """
        batch_v1 = get_batch_api()
        start_time = time.time()

        while True:
            elapsed = time.time() - start_time
            if timeout is not None and elapsed > timeout:
                logger.error(f"Job {job_name} timed out after {timeout}s")
                return False

            try:
                job = batch_v1.read_namespaced_job(
                    name=job_name,
                    namespace=settings.k8s_namespace,
                )

                status = get_job_status(job)

                if status == "succeeded":
                    return True
                elif status == "failed":
                    return False

                # Still running or pending
                time.sleep(self.poll_interval)

            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
                time.sleep(self.poll_interval * 2)

def create_runner(kind: str) -> CommandRunner:
    if kind == "local":
        return LocalRunner()
    if kind == "kubernetes":
        return KubernetesRunner()
    raise ValueError(f"Unknown runner '{kind}'")
