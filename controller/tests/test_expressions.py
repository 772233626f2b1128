"""Tests for the expression language."""

import hashlib

import pytest

from controller.src.errors import PipelineDefinitionError
from controller.src.pipeline.expressions import (
    build_scope,
    compile_condition,
    compile_expression,
    hash_files,
    render,
    validate_template,
)

@pytest.fixture
def scope(make_context, tmp_path):
    context = make_context(
        "refs/heads/main",
        env={"TARGET": "armv7"},
        secrets={"TOKEN": "hunter2"},
        repository="acme/relay",
    )
    return build_scope(
        context,
        workspace=tmp_path,
        steps={"cargo-cache": {"cache-hit": "true"}},
        env={"PROFILE": "release"},
    )

def evaluate(source, scope):
    return compile_expression(source)(scope)

def test_lookups(scope):
    assert evaluate("pipeline.branch", scope) == "main"
    assert evaluate("pipeline.repository", scope) == "acme/relay"
    assert evaluate("runner.os", scope) == "Linux"
    assert evaluate("env.TARGET", scope) == "armv7"
    assert evaluate("env.PROFILE", scope) == "release"
    assert evaluate("secrets.TOKEN", scope) == "hunter2"
    assert evaluate("steps.cargo-cache.outputs.cache-hit", scope) == "true"

def test_missing_lookup_is_empty(scope):
    assert evaluate("env.NOPE", scope) == ""
    assert evaluate("steps.missing.outputs.x", scope) == ""

def test_operators(scope):
    assert evaluate("pipeline.branch == 'main' && env.TARGET != 'x86'", scope) is True
    assert evaluate("pipeline.branch == 'dev' || env.TARGET == 'armv7'", scope) is True
    assert evaluate("!(pipeline.branch == 'main')", scope) is False
    assert evaluate("1 == 1.0", scope) is True

def test_or_returns_first_truthy_value(scope):
    assert evaluate("env.NOPE || 'fallback'", scope) == "fallback"

def test_functions(scope):
    assert evaluate("startsWith(pipeline.ref, 'refs/heads/')", scope) is True
    assert evaluate("endsWith(pipeline.repository, '/relay')", scope) is True
    assert evaluate("contains(env.TARGET, 'arm')", scope) is True
    assert evaluate("contains('abc', 'z')", scope) is False

def test_quoted_strings(scope):
    assert evaluate("'it''s'", scope) == "it's"

def test_condition_accepts_wrapped_expression(scope):
    assert compile_condition("${{ pipeline.branch == 'main' }}")(scope) is True
    assert compile_condition("pipeline.branch == 'main'")(scope) is True
    assert compile_condition("env.NOPE")(scope) is False

def test_hash_files(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "Cargo.lock").write_text("one")
    (tmp_path / "Cargo.lock").write_text("two")

    expected = hashlib.sha256()
    for content in (b"two", b"one"):  # sorted by path: Cargo.lock < a/Cargo.lock
        expected.update(hashlib.sha256(content).digest())

    assert hash_files(tmp_path, "**/Cargo.lock") == expected.hexdigest()
    assert hash_files(tmp_path, "**/missing.lock") == ""

@pytest.mark.parametrize("pattern", ["/etc/hostname", "", "../outside/*.lock"])
def test_hash_files_rejects_patterns_outside_workspace(tmp_path, pattern):
    with pytest.raises(PipelineDefinitionError, match="relative to the workspace"):
        hash_files(tmp_path, pattern)

def test_render_template(scope, tmp_path):
    (tmp_path / "Cargo.lock").write_text("lock")
    rendered = render(
        {
            "key": "${{ runner.os }}-${{ env.TARGET }}-cargo-${{ hashFiles('**/Cargo.lock') }}",
            "paths": ["target/${{ env.TARGET }}"],
            "depth": 1,
        },
        scope,
    )
    assert rendered["key"] == f"Linux-armv7-cargo-{hash_files(tmp_path, '**/Cargo.lock')}"
    assert rendered["paths"] == ["target/armv7"]
    assert rendered["depth"] == 1

def test_render_leaves_plain_text(scope):
    assert render("cargo build --release", scope) == "cargo build --release"

@pytest.mark.parametrize("source", [
    "pipeline.ref ==",
    "(pipeline.ref",
    "unknownFn(1)",
    "pipeline.ref = 'x'",
    "",
])
def test_syntax_errors(source):
    with pytest.raises(PipelineDefinitionError):
        compile_expression(source)

def test_validate_template():
    validate_template("echo ${{ env.A }} ${{ pipeline.sha }}")
    with pytest.raises(PipelineDefinitionError):
        validate_template("echo ${{ env.A == }}")
