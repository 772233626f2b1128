"""Tests for webhook handling."""

import hashlib
import hmac

from api.src.config import get_settings
from api.src.services import github
from api.src.services.github import fetch_pipeline_config, parse_webhook_payload, verify_signature

import pytest

def test_parse_push_payload():
    payload = {
        "ref": "refs/heads/main",
        "repository": {
            "name": "test-repo",
            "full_name": "user/test-repo",
            "clone_url": "https://github.com/user/test-repo.git",
        },
        "head_commit": {
            "id": "abc123def456",
            "message": "Test commit",
        },
        "pusher": {
            "name": "testuser",
        },
    }

    result = parse_webhook_payload(payload)

    assert result["repo_name"] == "test-repo"
    assert result["repo_full_name"] == "user/test-repo"
    assert result["ref"] == "refs/heads/main"
    assert result["branch"] == "main"
    assert result["commit_sha"] == "abc123def456"
    assert result["pusher"] == "testuser"

def test_parse_payload_with_after():
    """Test fallback to 'after' field for commit SHA."""
    payload = {
        "ref": "refs/heads/feature",
        "after": "xyz789",
        "repository": {
            "name": "repo",
            "full_name": "user/repo",
            "clone_url": "https://github.com/user/repo.git",
        },
        "head_commit": None,
        "pusher": {"name": "user"},
    }

    result = parse_webhook_payload(payload)
    assert result["commit_sha"] == "xyz789"
    assert result["branch"] == "feature"

def test_parse_tag_push():
    result = parse_webhook_payload({"ref": "refs/tags/v1.0", "after": "abc"})
    assert result["ref"] == "refs/tags/v1.0"
    assert result["branch"] == "refs/tags/v1.0"

def test_verify_signature_without_secret(monkeypatch):
    """When no secret is configured, verification should pass."""
    monkeypatch.setattr(github, "settings", get_settings().model_copy(update={"github_webhook_secret": ""}))
    result = verify_signature(b"payload", "sha256=anything")
    assert result is True

def test_verify_signature_with_secret(monkeypatch):
    monkeypatch.setattr(github, "settings", get_settings().model_copy(update={"github_webhook_secret": "s3cret"}))
    body = b'{"ref": "refs/heads/main"}'
    good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, good) is True
    assert verify_signature(body, "sha256=" + "0" * 64) is False

@pytest.mark.asyncio
async def test_fetch_pipeline_config(tmp_path):
    assert await fetch_pipeline_config(str(tmp_path)) is None

    (tmp_path / "relayci.yml").write_text("name: fallback\n")
    (tmp_path / ".relayci.yml").write_text("name: preferred\n")
    assert (await fetch_pipeline_config(str(tmp_path)))["name"] == "preferred"
