"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from capture_ledger.config import Config, create_default_config, load_config

ENV_VARS = [
    "CAPTURE_VAULT_PATH",
    "CAPTURE_LEDGER_DB",
    "CAPTURE_VOICE_FOLDER",
    "CAPTURE_RETENTION_DAYS",
    "CAPTURE_TRANSCRIPTION_ENABLED",
    "WHISPER_URL",
    "WHISPER_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.vault.root == Path("vault")
        assert config.vault.inbox_dir == "inbox"
        assert config.voice.folder is None
        assert config.transcription.enabled is False
        assert config.retention.window_days == 90
        assert config.ledger_db_path == Path("data/ledger.sqlite")
        assert config.validate() == []

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
vault:
  root: /srv/vault
  inbox_dir: captures
voice:
  folder: /srv/recordings
  extensions: [".m4a", ".wav"]
transcription:
  enabled: true
  base_url: http://whisper:9000
  max_attempts: 5
retention:
  window_days: 30
  keep_snapshots: 4
ledger_db_path: /srv/ledger.sqlite
busy_timeout_ms: 2000
"""
        )

        config = load_config(path)

        assert config.vault.root == Path("/srv/vault")
        assert config.vault.inbox_dir == "captures"
        assert config.vault.scratch_dir == ".trash"
        assert config.voice.folder == Path("/srv/recordings")
        assert config.voice.extensions == (".m4a", ".wav")
        assert config.transcription.enabled is True
        assert config.transcription.base_url == "http://whisper:9000"
        assert config.transcription.max_attempts == 5
        assert config.retention.window_days == 30
        assert config.retention.keep_snapshots == 4
        assert config.ledger_db_path == Path("/srv/ledger.sqlite")
        assert config.busy_timeout_ms == 2000

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).retention.window_days == 90

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("retention:\n  window_days: 30\ntranscription:\n  enabled: false\n")
        monkeypatch.setenv("CAPTURE_VAULT_PATH", "/env/vault")
        monkeypatch.setenv("CAPTURE_LEDGER_DB", "/env/ledger.sqlite")
        monkeypatch.setenv("CAPTURE_VOICE_FOLDER", "/env/voice")
        monkeypatch.setenv("CAPTURE_RETENTION_DAYS", "180")
        monkeypatch.setenv("CAPTURE_TRANSCRIPTION_ENABLED", "true")
        monkeypatch.setenv("WHISPER_URL", "http://gpu-box:8178")
        monkeypatch.setenv("WHISPER_TIMEOUT", "600")

        config = load_config(path)

        assert config.vault.root == Path("/env/vault")
        assert config.ledger_db_path == Path("/env/ledger.sqlite")
        assert config.voice.folder == Path("/env/voice")
        assert config.retention.window_days == 180
        assert config.transcription.enabled is True
        assert config.transcription.base_url == "http://gpu-box:8178"
        assert config.transcription.timeout_seconds == 600

    def test_malformed_env_values_keep_file_values(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("retention:\n  window_days: 30\ntranscription:\n  enabled: true\n")
        monkeypatch.setenv("CAPTURE_RETENTION_DAYS", "ninety")
        monkeypatch.setenv("CAPTURE_TRANSCRIPTION_ENABLED", "yes")

        config = load_config(path)

        assert config.retention.window_days == 30
        assert config.transcription.enabled is True


class TestValidate:
    def test_same_inbox_and_scratch(self):
        config = Config()
        config.vault.scratch_dir = "inbox"

        assert "vault.inbox_dir and vault.scratch_dir must differ" in config.validate()

    def test_invalid_numbers(self):
        config = Config()
        config.transcription.timeout_seconds = 0
        config.transcription.max_attempts = 0
        config.retention.window_days = 0
        config.retention.keep_snapshots = 0
        config.voice.fingerprint_bytes = 0

        errors = config.validate()

        assert len(errors) == 5

    def test_enabled_transcription_needs_url(self):
        config = Config()
        config.transcription.enabled = True
        config.transcription.base_url = ""

        assert config.validate() == [
            "transcription.base_url is required when transcription is enabled"
        ]


class TestCreateDefaultConfig:
    def test_template_loads_as_defaults(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert path.exists()
        assert config == Config()
