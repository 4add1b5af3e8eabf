"""
Configuration management.

All configuration keys and defaults live here; no other module invents
config keys. Values come from a YAML file, and environment variables
override the file for the settings most often changed per machine.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class VaultConfig:
    """Target vault layout.

    Notes land in <root>/<inbox_dir>; in-flight scratch files live in
    <root>/<scratch_dir> so the final rename stays on one filesystem.
    """

    root: Path = field(default_factory=lambda: Path("vault"))
    inbox_dir: str = "inbox"
    scratch_dir: str = ".trash"


@dataclass
class VoiceConfig:
    """Voice memo folder source."""

    # Locally-synced recordings folder (None disables the source)
    folder: Path | None = None
    extensions: tuple[str, ...] = (".m4a",)
    # Bytes hashed from the head of each file for the partial fingerprint
    fingerprint_bytes: int = 4 * 1024 * 1024


@dataclass
class TranscriptionConfig:
    """Whisper transcription server."""

    enabled: bool = False
    base_url: str = "http://localhost:8178"
    # Request timeout (seconds); long memos take minutes on CPU
    timeout_seconds: int = 300
    # Connection retries inside one request
    max_retries: int = 2
    # Retryable failures tolerated before a placeholder is written
    max_attempts: int = 3


@dataclass
class RetentionConfig:
    """Backup and retention settings."""

    # Exported captures older than this are deleted (after a verified snapshot)
    window_days: int = 90
    backup_dir: Path = field(default_factory=lambda: Path("data/backups"))
    keep_snapshots: int = 24


@dataclass
class Config:
    """Application configuration."""

    vault: VaultConfig = field(default_factory=VaultConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    ledger_db_path: Path = field(default_factory=lambda: Path("data/ledger.sqlite"))
    busy_timeout_ms: int = 5000

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not str(self.vault.root):
            errors.append("vault.root is required")
        if not self.vault.inbox_dir or not self.vault.scratch_dir:
            errors.append("vault.inbox_dir and vault.scratch_dir are required")
        elif self.vault.inbox_dir == self.vault.scratch_dir:
            errors.append("vault.inbox_dir and vault.scratch_dir must differ")

        if self.transcription.enabled and not self.transcription.base_url:
            errors.append("transcription.base_url is required when transcription is enabled")
        if self.transcription.timeout_seconds <= 0:
            errors.append("transcription.timeout_seconds must be positive")
        if self.transcription.max_attempts < 1:
            errors.append("transcription.max_attempts must be at least 1")

        if self.retention.window_days < 1:
            errors.append("retention.window_days must be at least 1")
        if self.retention.keep_snapshots < 1:
            errors.append("retention.keep_snapshots must be at least 1")

        if self.voice.fingerprint_bytes <= 0:
            errors.append("voice.fingerprint_bytes must be positive")

        return errors


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)  # Keep file value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").lower()
    if raw == "true":
        return True
    if raw == "false":
        return False
    return bool(default)


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    A missing file yields the defaults. Environment variables can override
    config values:
    - CAPTURE_VAULT_PATH
    - CAPTURE_LEDGER_DB
    - CAPTURE_VOICE_FOLDER
    - CAPTURE_RETENTION_DAYS
    - CAPTURE_TRANSCRIPTION_ENABLED (true/false)
    - WHISPER_URL
    - WHISPER_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Vault
    vault_data = data.get("vault", {}) or {}
    vault = VaultConfig(
        root=Path(os.environ.get("CAPTURE_VAULT_PATH", vault_data.get("root", "vault"))),
        inbox_dir=vault_data.get("inbox_dir", "inbox"),
        scratch_dir=vault_data.get("scratch_dir", ".trash"),
    )

    # Voice memos
    voice_data = data.get("voice", {}) or {}
    voice_folder = os.environ.get("CAPTURE_VOICE_FOLDER", voice_data.get("folder"))
    voice = VoiceConfig(
        folder=Path(voice_folder) if voice_folder else None,
        extensions=tuple(voice_data.get("extensions", [".m4a"])),
        fingerprint_bytes=int(voice_data.get("fingerprint_bytes", 4 * 1024 * 1024)),
    )

    # Transcription
    transcription_data = data.get("transcription", {}) or {}
    transcription = TranscriptionConfig(
        enabled=_env_bool(
            "CAPTURE_TRANSCRIPTION_ENABLED", transcription_data.get("enabled", False)
        ),
        base_url=os.environ.get(
            "WHISPER_URL", transcription_data.get("base_url", "http://localhost:8178")
        ),
        timeout_seconds=_env_int(
            "WHISPER_TIMEOUT", transcription_data.get("timeout_seconds", 300)
        ),
        max_retries=transcription_data.get("max_retries", 2),
        max_attempts=transcription_data.get("max_attempts", 3),
    )

    # Retention
    retention_data = data.get("retention", {}) or {}
    retention = RetentionConfig(
        window_days=_env_int("CAPTURE_RETENTION_DAYS", retention_data.get("window_days", 90)),
        backup_dir=Path(retention_data.get("backup_dir", "data/backups")),
        keep_snapshots=retention_data.get("keep_snapshots", 24),
    )

    ledger_db = os.environ.get("CAPTURE_LEDGER_DB", data.get("ledger_db_path", "data/ledger.sqlite"))

    return Config(
        vault=vault,
        voice=voice,
        transcription=transcription,
        retention=retention,
        ledger_db_path=Path(ledger_db),
        busy_timeout_ms=data.get("busy_timeout_ms", 5000),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Capture Ledger Configuration
#
# Paths may be absolute or relative to the working directory.

# Vault receiving exported notes
vault:
  root: "vault"                  # Vault root directory
  inbox_dir: "inbox"             # Notes land in <root>/inbox/<capture id>.md
  scratch_dir: ".trash"          # Scratch files for atomic writes (same filesystem)

# Voice memo folder (locally-synced recordings)
voice:
  folder: null                   # e.g. "~/Library/Group Containers/.../Recordings"
  extensions: [".m4a"]
  fingerprint_bytes: 4194304     # Head of file hashed for duplicate detection

# Whisper transcription server
transcription:
  enabled: false                 # Set to true to transcribe during processing
  base_url: "http://localhost:8178"
  timeout_seconds: 300
  max_retries: 2                 # Connection retries per request
  max_attempts: 3                # Retryable failures before a placeholder is written

# Backups and retention
retention:
  window_days: 90                # Exported captures older than this are swept
  backup_dir: "data/backups"
  keep_snapshots: 24

# Ledger database path
ledger_db_path: "data/ledger.sqlite"
busy_timeout_ms: 5000
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
