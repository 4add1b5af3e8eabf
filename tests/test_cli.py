"""Tests for CLI commands."""

import pytest

from capture_ledger.runner.main import create_cli, main
from capture_ledger.schemas.capture import CaptureMetadata
from capture_ledger.services import CapturePipeline
from capture_ledger.state_store import LedgerStore
from conftest import SAMPLE_EMAIL_BODY


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [
        "CAPTURE_VAULT_PATH",
        "CAPTURE_LEDGER_DB",
        "CAPTURE_VOICE_FOLDER",
        "CAPTURE_RETENTION_DAYS",
        "CAPTURE_TRANSCRIPTION_ENABLED",
        "WHISPER_URL",
        "WHISPER_TIMEOUT",
    ]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    """Config pointing every path into tmp_path."""
    (tmp_path / "voice").mkdir()
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
vault:
  root: {tmp_path / "vault"}
voice:
  folder: {tmp_path / "voice"}
retention:
  backup_dir: {tmp_path / "backups"}
ledger_db_path: {tmp_path / "ledger.sqlite"}
"""
    )
    return path


@pytest.fixture
def ledger(tmp_path, config_file):
    return LedgerStore(tmp_path / "ledger.sqlite")


def run(config_file, *args):
    return main(["-c", str(config_file), *args])


def stage_email(ledger, body=SAMPLE_EMAIL_BODY):
    return ledger.insert_capture("email", CaptureMetadata(native_id="<m1@example.com>"), body)


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        parser = create_cli()
        subparsers_action = next(a for a in parser._actions if a.dest == "command")

        assert set(subparsers_action.choices) == {
            "init",
            "status",
            "ingest",
            "process",
            "reconcile",
            "export",
            "backup",
            "sweep",
            "errors",
            "release",
        }

    def test_defaults(self):
        parser = create_cli()

        args = parser.parse_args(["process"])
        assert args.no_ingest is False
        assert str(args.config) == "config.yaml"

        args = parser.parse_args(["errors"])
        assert args.limit == 50
        assert args.capture_id is None

    def test_export_requires_id(self):
        parser = create_cli()

        with pytest.raises(SystemExit):
            parser.parse_args(["export"])

        args = parser.parse_args(["export", "--id", "01JNC7W2Q8R5T6V9X0Y1Z2A3B4"])
        assert args.capture_id == "01JNC7W2Q8R5T6V9X0Y1Z2A3B4"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestCommands:
    def test_init_writes_config_and_ledger(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("CAPTURE_LEDGER_DB", str(tmp_path / "ledger.sqlite"))
        config_path = tmp_path / "new" / "config.yaml"

        assert main(["-c", str(config_path), "init"]) == 0

        assert config_path.exists()
        assert (tmp_path / "ledger.sqlite").exists()
        assert "Ledger ready" in capsys.readouterr().out

        assert main(["-c", str(config_path), "init"]) == 0
        assert "already exists" in capsys.readouterr().out

    def test_invalid_config_fails(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("vault:\n  inbox_dir: same\n  scratch_dir: same\n")

        assert run(path, "status") == 1
        assert "Failed to load config" in capsys.readouterr().out

    def test_status(self, config_file, ledger, capsys):
        stage_email(ledger)

        assert run(config_file, "status") == 0

        out = capsys.readouterr().out
        assert "Ledger Status" in out
        assert "No snapshot taken yet" in out

    def test_ingest_and_process(self, tmp_path, config_file, ledger, capsys):
        (tmp_path / "voice" / "memo-001.m4a").write_bytes(b"fake audio")
        stage_email(ledger)

        assert run(config_file, "ingest") == 0
        assert "Staged 1 new capture(s)" in capsys.readouterr().out

        assert run(config_file, "process", "--no-ingest") == 0
        out = capsys.readouterr().out
        assert "exported" in out
        assert "awaiting_transcription" in out
        assert len(list((tmp_path / "vault" / "inbox").glob("*.md"))) == 1

    def test_process_reconciles_first(self, tmp_path, config_file, ledger, capsys):
        scratch = tmp_path / "vault" / ".trash" / "01ARZ3NDEKTSV4RRFFQ69G5FAV.tmp"
        scratch.parent.mkdir(parents=True)
        scratch.write_text("half-written note")
        gone = tmp_path / "voice" / "gone.m4a"
        missing = ledger.insert_capture(
            "voice", CaptureMetadata(native_id="gone.m4a", source_path=str(gone))
        )

        assert run(config_file, "process", "--no-ingest") == 0

        out = capsys.readouterr().out
        assert "Stale scratch files: 1" in out
        assert "Quarantined: 1" in out
        assert not scratch.exists()

        after = ledger.get_capture(missing.id)
        assert after.status.value == "staged"
        assert after.metadata.quarantine_reason == "source_unresolvable"
        assert ledger.get_export_audits(missing.id) == []
        assert not (tmp_path / "vault" / "inbox" / f"{missing.id}.md").exists()

    def test_process_attempts_each_capture_once(self, config_file, ledger, monkeypatch):
        stage_email(ledger)
        calls = []
        original = CapturePipeline.process_capture

        def counting(self, capture_id):
            calls.append(capture_id)
            return original(self, capture_id)

        monkeypatch.setattr(CapturePipeline, "process_capture", counting)

        assert run(config_file, "process", "--no-ingest") == 0
        assert len(calls) == 1

    def test_export_single_capture(self, tmp_path, config_file, ledger, capsys):
        capture = stage_email(ledger, "Hi there")

        assert run(config_file, "export", "--id", capture.id) == 0

        assert f"{capture.id}: exported" in capsys.readouterr().out
        assert (tmp_path / "vault" / "inbox" / f"{capture.id}.md").exists()

    def test_export_unknown_capture(self, config_file, capsys):
        assert run(config_file, "export", "--id", "01JNC7W2Q8R5T6V9X0Y1Z2A3B4") == 1
        assert "CaptureNotFound" in capsys.readouterr().out

    def test_reconcile(self, config_file, ledger, capsys):
        stage_email(ledger)

        assert run(config_file, "reconcile") == 0

        out = capsys.readouterr().out
        assert "Resumed:             1" in out
        assert "Recovery completed" in out

    def test_backup_then_sweep(self, tmp_path, config_file, ledger, capsys):
        assert run(config_file, "sweep") == 1
        assert "no verified snapshot" in capsys.readouterr().out

        assert run(config_file, "backup") == 0
        assert "Snapshot verified" in capsys.readouterr().out
        assert len(list((tmp_path / "backups").glob("ledger-*.sqlite"))) == 1

        assert run(config_file, "sweep") == 0
        assert "Removed 0 capture(s)" in capsys.readouterr().out

    def test_errors(self, config_file, ledger, capsys):
        assert run(config_file, "errors") == 0
        assert "No errors logged" in capsys.readouterr().out

        ledger.log_error("stage", "InvalidCapture", "native_id is required")
        ledger.log_error(
            "transcribe",
            "TranscriptionOom",
            "out of memory",
            escalation_action="placeholder",
            dead_letter=True,
        )

        assert run(config_file, "errors", "--limit", "1") == 0
        out = capsys.readouterr().out
        assert "TranscriptionOom -> placeholder [dead-letter]" in out
        assert "InvalidCapture" not in out
        assert "1 entry" in out

    def test_release(self, config_file, ledger, capsys):
        capture = ledger.insert_capture(
            "voice",
            CaptureMetadata(native_id="memo.m4a", quarantine_reason="source_unresolvable"),
        )

        assert run(config_file, "release", "--id", capture.id) == 0

        assert f"Released {capture.id}" in capsys.readouterr().out
        assert not ledger.get_capture(capture.id).metadata.is_blocked
