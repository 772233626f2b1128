"""Tests for the command runners."""

from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from controller.src.services import runner as runner_module
from controller.src.services.runner import KubernetesRunner, LocalRunner, create_runner

def test_local_runner_captures_output(tmp_path):
    out = LocalRunner().run("echo out; echo err >&2; exit 4", cwd=tmp_path, env={})
    assert out.exit_code == 4
    assert "out" in out.output
    assert "err" in out.output

def test_local_runner_stops_at_first_failing_command(tmp_path):
    out = LocalRunner().run("false\necho after", cwd=tmp_path, env={})
    assert out.exit_code == 1
    assert "after" not in out.output

def test_local_runner_env(tmp_path):
    out = LocalRunner(inherit_env=False).run('echo "$GREETING"', cwd=tmp_path, env={"GREETING": "hi"})
    assert out.output.strip() == "hi"

def test_local_runner_timeout(tmp_path):
    out = LocalRunner().run("sleep 5", cwd=tmp_path, env={}, timeout=1)
    assert out.exit_code == 124
    assert "timed out" in out.output

def test_create_runner():
    assert isinstance(create_runner("local"), LocalRunner)
    assert isinstance(create_runner("kubernetes"), KubernetesRunner)
    with pytest.raises(ValueError, match="Unknown runner"):
        create_runner("docker")

class FakeBatchApi:
    def __init__(self, outcomes, conflict=False):
        self.outcomes = list(outcomes)
        self.conflict = conflict
        self.created = []
        self.deleted = []

    def create_namespaced_job(self, namespace, body):
        if self.conflict:
            self.conflict = False
            raise ApiException(status=409, reason="AlreadyExists")
        self.created.append(body)

    def delete_namespaced_job(self, name, namespace, body, propagation_policy):
        self.deleted.append(name)

    def read_namespaced_job(self, name, namespace):
        status = self.outcomes.pop(0)
        return SimpleNamespace(status=SimpleNamespace(**status))

@pytest.fixture
def fake_cluster(monkeypatch):
    def install(api):
        monkeypatch.setattr(runner_module, "get_batch_api", lambda: api)
        monkeypatch.setattr(runner_module, "collect_logs", lambda job_name: f"logs of {job_name}")
        return api
    return install

def test_kubernetes_runner_success(fake_cluster, tmp_path):
    api = fake_cluster(FakeBatchApi([
        {"succeeded": None, "failed": None, "active": 1},
        {"succeeded": 1, "failed": None, "active": None},
    ]))
    runner = KubernetesRunner(poll_interval=0)

    out = runner.run(
        "cargo build",
        cwd=tmp_path,
        env={"TARGET": "armv7"},
        run_id="run-1",
        stage="build",
        step_order=2,
        step_name="Build client",
    )

    assert out.exit_code == 0
    job = api.created[0]
    assert out.output == f"logs of {job.metadata.name}"
    assert job.spec.template.spec.containers[0].args == ["cargo build"]
    assert job.spec.template.spec.containers[0].image == "ubuntu:24.04"

def test_kubernetes_runner_failure(fake_cluster, tmp_path):
    fake_cluster(FakeBatchApi([{"succeeded": None, "failed": 1, "active": None}]))
    out = KubernetesRunner(poll_interval=0).run("exit 1", cwd=tmp_path, env={}, run_id="run-1")
    assert out.exit_code == 1

def test_kubernetes_runner_replaces_existing_job(fake_cluster, tmp_path):
    api = fake_cluster(FakeBatchApi([{"succeeded": 1, "failed": None, "active": None}], conflict=True))
    out = KubernetesRunner(poll_interval=0).run("true", cwd=tmp_path, env={}, run_id="run-1")
    assert out.exit_code == 0
    assert len(api.deleted) == 1
    assert len(api.created) == 1
