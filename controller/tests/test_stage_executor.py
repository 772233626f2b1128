"""Tests for running the steps of one stage."""

import pytest

from controller.src.errors import CacheError
from controller.src.models.step import StageStatus, StepStatus
from controller.src.pipeline.artifacts import ArtifactStore
from controller.src.pipeline.cache import FileCacheStore
from controller.src.pipeline.loader import build_pipeline, parse_definition
from controller.src.pipeline.stage_executor import StageExecutor, read_outputs
from controller.src.services.runner import LocalRunner

class BrokenCache(FileCacheStore):
    def lookup(self, key):
        raise CacheError("disk on fire")

def make_stage(body, name="build"):
    return build_pipeline(parse_definition({"stages": {name: body}})).stages[0]

@pytest.fixture
def executor(tmp_path):
    return StageExecutor(runner=LocalRunner(), workspace_root=tmp_path / "work")

@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")

def test_steps_run_in_order(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"run": "echo one >> trace"},
        {"run": "echo two >> trace"},
    ]})
    context = make_context()

    result = executor.run(stage, context, artifacts)

    assert result.status == StageStatus.SUCCEEDED
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    trace = executor.workspace_for(stage, context) / "trace"
    assert trace.read_text().split() == ["one", "two"]

def test_failing_step_halts_stage(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"name": "prepare", "run": "echo ready"},
        {"name": "compile", "run": "echo 'error[E0308]: mismatched types'; exit 3"},
        {"name": "package", "run": "touch packaged"},
    ]})
    context = make_context()

    result = executor.run(stage, context, artifacts)

    assert result.status == StageStatus.FAILED
    assert result.failing_step_index == 1
    assert result.error_type == "BuildError"
    assert "status 3" in result.error
    assert len(result.steps) == 2
    assert "mismatched types" in result.steps[1].logs
    assert not (executor.workspace_for(stage, context) / "packaged").exists()

def test_setup_failure_is_toolchain_error(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"name": "install rust", "kind": "setup", "run": "exit 1"},
    ]})
    result = executor.run(stage, make_context(), artifacts)
    assert result.error_type == "ToolchainInstallError"
    assert result.failing_step_index == 0

def test_step_outputs_feed_later_steps(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"id": "meta", "run": 'echo "version=1.2.3" >> "$RELAYCI_OUTPUT"'},
        {"run": "test '${{ steps.meta.outputs.version }}' = 1.2.3"},
    ]})
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.SUCCEEDED
    assert result.steps[0].outputs == {"version": "1.2.3"}

def test_environment_layers(executor, artifacts, make_context):
    stage = make_stage({
        "env": {"TARGET": "armv7", "PROFILE": "debug"},
        "steps": [
            {"env": {"PROFILE": "release"}, "run": 'echo "$TARGET-$PROFILE-$RELAYCI_STAGE-$RELAYCI_STEP_ORDER" > out'},
        ],
    })
    context = make_context()
    executor.run(stage, context, artifacts)
    out = executor.workspace_for(stage, context) / "out"
    assert out.read_text().strip() == "armv7-release-build-0"

def test_false_step_condition_skips_step(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"if": "pipeline.branch == 'main'", "run": "exit 1"},
        {"run": "true"},
    ]})
    result = executor.run(stage, make_context("refs/heads/dev"), artifacts)
    assert result.status == StageStatus.SUCCEEDED
    assert result.steps[0].status == StepStatus.SKIPPED

def test_secrets_are_masked(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"run": "echo token=${{ secrets.TOKEN }}; exit 1"},
    ]})
    result = executor.run(stage, make_context(secrets={"TOKEN": "hunter2"}), artifacts)
    assert "token=***" in result.steps[0].logs
    assert "hunter2" not in result.steps[0].logs

def test_outputs_registered_after_success(executor, artifacts, make_context):
    stage = make_stage({
        "steps": [{"run": "mkdir -p dist && echo elf > dist/relay"}],
        "outputs": {"musl-armv7": "dist/relay"},
    })
    result = executor.run(stage, make_context(), artifacts)
    assert result.artifacts == ["musl-armv7"]
    assert artifacts.get("musl-armv7").path.read_text().strip() == "elf"
    assert artifacts.get("musl-armv7").stage == "build"

def test_failed_stage_registers_nothing(executor, artifacts, make_context):
    stage = make_stage({
        "steps": [{"run": "mkdir -p dist && echo elf > dist/relay && exit 1"}],
        "outputs": {"musl-armv7": "dist/relay"},
    })
    executor.run(stage, make_context(), artifacts)
    assert artifacts.list() == []

def test_missing_output_fails_stage(executor, artifacts, make_context):
    stage = make_stage({
        "steps": [{"run": "true"}],
        "outputs": {"musl-armv7": "dist/relay"},
    })
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.failing_step_index is None
    assert result.error_type == "ArtifactError"

def test_upload_artifact_action(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"run": "echo apk > app.apk"},
        {"uses": "upload-artifact@v4", "with": {"name": "android", "path": "app.apk"}},
    ]})
    executor.run(stage, make_context(), artifacts)
    assert artifacts.get("android").path.read_text().strip() == "apk"

def test_inputs_are_materialized(executor, artifacts, make_context, tmp_path):
    (tmp_path / "relay").write_text("elf")
    artifacts.register("musl-armv7", tmp_path / "relay", stage="build")

    stage = make_stage({
        "inputs": ["musl-armv7"],
        "steps": [{"run": "grep -q elf artifacts/musl-armv7/musl-armv7"}],
    }, name="package")
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.SUCCEEDED

def test_missing_input_fails_before_any_step(executor, artifacts, make_context):
    stage = make_stage({"inputs": ["nothing"], "steps": [{"run": "true"}]}, name="package")
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.error_type == "ArtifactNotFound"
    assert result.steps == []

CACHED_STAGE = {
    "steps": [
        {"run": "echo 'serde = 1' > Cargo.lock"},
        {
            "id": "deps",
            "uses": "cache",
            "with": {
                "paths": ["target"],
                "key": "${{ runner.os }}-cargo-${{ hashFiles('**/Cargo.lock') }}",
                "restore-keys": ["${{ runner.os }}-cargo-"],
            },
        },
        {
            "if": "steps.deps.outputs.cache-hit != 'true'",
            "run": "mkdir -p target && echo built > target/deps && echo rebuilt >> ../rebuilds",
        },
        {"run": "test -f target/deps"},
    ],
}

def test_cache_roundtrip_skips_regeneration(tmp_path, artifacts, make_context):
    executor = StageExecutor(runner=LocalRunner(), workspace_root=tmp_path / "work")
    cache = FileCacheStore(tmp_path / "cache")
    stage = make_stage(CACHED_STAGE)

    first = executor.run(stage, make_context(run_id="run-1"), artifacts, cache)
    assert first.status == StageStatus.SUCCEEDED
    assert first.steps[1].outputs["cache-hit"] == "false"
    assert len(cache.entries()) == 1

    second = executor.run(stage, make_context(run_id="run-2"), ArtifactStore(tmp_path / "a2"), cache)
    assert second.status == StageStatus.SUCCEEDED
    assert second.steps[1].outputs["cache-hit"] == "true"
    assert second.steps[2].status == StepStatus.SKIPPED
    assert (tmp_path / "work" / "run-1" / "rebuilds").exists()
    assert not (tmp_path / "work" / "run-2" / "rebuilds").exists()

def test_cache_is_not_saved_for_failed_stage(tmp_path, artifacts, make_context):
    executor = StageExecutor(runner=LocalRunner(), workspace_root=tmp_path / "work")
    cache = FileCacheStore(tmp_path / "cache")
    body = {"steps": CACHED_STAGE["steps"] + [{"run": "exit 1"}]}

    executor.run(make_stage(body), make_context(), artifacts, cache)
    assert cache.entries() == {}

def test_cache_errors_are_a_miss(tmp_path, artifacts, make_context):
    executor = StageExecutor(runner=LocalRunner(), workspace_root=tmp_path / "work")
    result = executor.run(make_stage(CACHED_STAGE), make_context(), artifacts, BrokenCache(tmp_path / "cache"))
    assert result.status == StageStatus.SUCCEEDED
    assert result.steps[1].outputs["cache-hit"] == "false"

def test_read_outputs(tmp_path):
    path = tmp_path / "out"
    path.write_text("a=1\nnot a pair\nb = two=2\n")
    assert read_outputs(path) == {"a": "1", "b": " two=2"}
    assert read_outputs(tmp_path / "missing") == {}

def test_missing_second_output_registers_nothing(executor, artifacts, make_context, tmp_path):
    stage = make_stage({
        "steps": [{"run": "echo elf > x"}],
        "outputs": {"a-bin": "x", "b-bin": "missing"},
    })
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.error_type == "ArtifactError"
    assert result.artifacts == []
    assert artifacts.list() == []
    assert not (tmp_path / "artifacts" / "a-bin").exists()

def test_output_name_taken_by_another_stage(executor, artifacts, make_context, tmp_path):
    (tmp_path / "other").write_text("other")
    artifacts.register("b-bin", tmp_path / "other", stage="lint")

    stage = make_stage({
        "steps": [{"run": "echo a > a && echo b > b"}],
        "outputs": {"a-bin": "a", "b-bin": "b"},
    })
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.error_type == "DuplicateArtifact"
    assert [ref.name for ref in artifacts.list()] == ["b-bin"]
    assert artifacts.get("b-bin").path.read_text() == "other"

def test_upload_artifact_twice_with_one_name(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"run": "echo one > one && echo two > two"},
        {"uses": "upload-artifact", "with": {"name": "bin", "path": "one"}},
        {"uses": "upload-artifact", "with": {"name": "bin", "path": "two"}},
    ]})
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.failing_step_index == 2
    assert result.error_type == "DuplicateArtifact"
    assert artifacts.list() == []

def test_upload_artifact_clashing_with_declared_output(executor, artifacts, make_context):
    stage = make_stage({
        "steps": [
            {"run": "echo one > one && echo two > two"},
            {"uses": "upload-artifact", "with": {"name": "bin", "path": "two"}},
        ],
        "outputs": {"bin": "one"},
    })
    result = executor.run(stage, make_context(), artifacts)
    assert result.failing_step_index == 1
    assert result.error_type == "DuplicateArtifact"

def test_step_condition_error_fails_that_step(executor, artifacts, make_context):
    stage = make_stage({"steps": [
        {"run": "echo ready"},
        {"if": "hashFiles('/etc/hostname') != ''", "run": "true"},
        {"run": "true"},
    ]})
    result = executor.run(stage, make_context(), artifacts)
    assert result.status == StageStatus.FAILED
    assert result.failing_step_index == 1
    assert result.error_type == "PipelineDefinitionError"
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.FAILED]

def test_cache_restore_key_fallback_after_lockfile_change(tmp_path, artifacts, make_context):
    executor = StageExecutor(runner=LocalRunner(), workspace_root=tmp_path / "work")
    cache = FileCacheStore(tmp_path / "cache")
    steps = [{"run": 'echo "serde = $SERDE" > Cargo.lock'}] + CACHED_STAGE["steps"][1:]
    stage = make_stage({"steps": steps})

    first = executor.run(stage, make_context(run_id="run-1", env={"SERDE": "1"}), artifacts, cache)
    assert first.status == StageStatus.SUCCEEDED
    [old_key] = cache.entries()

    second = executor.run(
        stage,
        make_context(run_id="run-2", env={"SERDE": "2"}),
        ArtifactStore(tmp_path / "a2"),
        cache,
    )
    assert second.status == StageStatus.SUCCEEDED
    assert second.steps[1].outputs == {"cache-hit": "false", "cache-matched-key": old_key}
    assert second.steps[2].status == StepStatus.SUCCEEDED
    assert (tmp_path / "work" / "run-2" / "rebuilds").exists()

    keys = set(cache.entries())
    assert old_key in keys
    assert len(keys) == 2
    [new_key] = keys - {old_key}
    assert new_key.startswith("Linux-cargo-")
