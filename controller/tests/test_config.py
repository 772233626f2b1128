"""Tests for controller settings and secrets."""

import pytest

from controller.src.config import Settings, load_secrets

def test_secrets_from_file_and_environment(tmp_path):
    secrets_file = tmp_path / "secrets.yml"
    secrets_file.write_text("AWS_ACCESS_KEY_ID: from-file\nAWS_SECRET_ACCESS_KEY: file-secret\n")
    settings = Settings(secrets_file=str(secrets_file))

    secrets = load_secrets(settings, environ={
        "RELAYCI_SECRET_AWS_ACCESS_KEY_ID": "from-env",
        "HOME": "/root",
    })

    assert secrets == {
        "AWS_ACCESS_KEY_ID": "from-env",
        "AWS_SECRET_ACCESS_KEY": "file-secret",
    }

def test_missing_secrets_file_is_ignored(tmp_path):
    settings = Settings(secrets_file=str(tmp_path / "nope.yml"))
    assert load_secrets(settings, environ={}) == {}

def test_secrets_file_must_be_a_mapping(tmp_path):
    secrets_file = tmp_path / "secrets.yml"
    secrets_file.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        load_secrets(Settings(secrets_file=str(secrets_file)), environ={})

def test_default_sink():
    settings = Settings(sink_type="directory", sink_path="/srv/mirror")
    sink = settings.default_sink()
    assert sink["type"] == "directory"
    assert sink["path"] == "/srv/mirror"
