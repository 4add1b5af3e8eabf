"""
Canonical capture records.

These dataclasses are the only shapes used for ledger rows across the
package: the store builds them from SQLite rows, services pass them around,
and the vault formatter renders them.
"""

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

# Bump when CaptureMetadata gains or changes fields
METADATA_VERSION = 1


class CaptureSource(str, Enum):
    """Where a capture was observed."""

    VOICE = "voice"
    EMAIL = "email"


class CaptureStatus(str, Enum):
    """Lifecycle status of a capture."""

    STAGED = "staged"
    TRANSCRIBED = "transcribed"
    FAILED_TRANSCRIPTION = "failed_transcription"
    EXPORTED = "exported"
    EXPORTED_DUPLICATE = "exported_duplicate"
    EXPORTED_PLACEHOLDER = "exported_placeholder"


TERMINAL_STATUSES = frozenset(
    {
        CaptureStatus.EXPORTED,
        CaptureStatus.EXPORTED_DUPLICATE,
        CaptureStatus.EXPORTED_PLACEHOLDER,
    }
)


class ExportMode(str, Enum):
    """How a capture reached the vault."""

    INITIAL = "initial"
    DUPLICATE = "duplicate"  # No bytes written
    PLACEHOLDER = "placeholder"


# Terminal status reached for each export mode
EXPORT_MODE_STATUS = {
    ExportMode.INITIAL: CaptureStatus.EXPORTED,
    ExportMode.DUPLICATE: CaptureStatus.EXPORTED_DUPLICATE,
    ExportMode.PLACEHOLDER: CaptureStatus.EXPORTED_PLACEHOLDER,
}


class ErrorOperation(str, Enum):
    """Operation that produced an error log entry."""

    STAGE = "stage"
    TRANSCRIBE = "transcribe"
    DEDUP = "dedup"
    EXPORT = "export"
    RECOVERY = "recovery"
    BACKUP = "backup"
    RETENTION = "retention"
    INTEGRITY = "integrity"


@dataclass
class FailureInfo:
    """Last transcription failure recorded on a capture."""

    kind: str
    message: str
    attempt_count: int = 0


@dataclass
class CaptureMetadata:
    """
    Typed, versioned capture metadata (stored as JSON in meta_json).

    native_id is the source-specific identity (voice file name, email
    Message-ID) and backs the (source, native_id) uniqueness index.
    """

    native_id: str
    version: int = METADATA_VERSION
    source_path: str | None = None
    partial_fingerprint: str | None = None
    attachment_count: int = 0
    attempt_count: int = 0
    failure: FailureInfo | None = None
    duplicate_of: str | None = None
    quarantine_reason: str | None = None
    halted_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocked(self) -> bool:
        """True when automatic processing must skip this capture."""
        return bool(self.quarantine_reason or self.halted_reason)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Serialize with sorted keys so equal metadata stores identically."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CaptureMetadata":
        failure_data = data.get("failure")
        return cls(
            native_id=str(data["native_id"]),
            version=int(data.get("version", METADATA_VERSION)),
            source_path=data.get("source_path"),
            partial_fingerprint=data.get("partial_fingerprint"),
            attachment_count=int(data.get("attachment_count", 0)),
            attempt_count=int(data.get("attempt_count", 0)),
            failure=FailureInfo(**failure_data) if failure_data else None,
            duplicate_of=data.get("duplicate_of"),
            quarantine_reason=data.get("quarantine_reason"),
            halted_reason=data.get("halted_reason"),
            extra=dict(data.get("extra") or {}),
        )

    @classmethod
    def from_json(cls, raw: str) -> "CaptureMetadata":
        return cls.from_dict(json.loads(raw))


@dataclass
class CaptureRecord:
    """A single observed item tracked through the pipeline."""

    id: str
    source: CaptureSource
    status: CaptureStatus
    raw_content: str
    content_hash: str | None
    metadata: CaptureMetadata
    created_at: str  # ISO timestamp, immutable
    updated_at: str  # ISO timestamp

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def native_id(self) -> str:
        return self.metadata.native_id

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CaptureRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            source=CaptureSource(row["source"]),
            status=CaptureStatus(row["status"]),
            raw_content=row["raw_content"],
            content_hash=row["content_hash"],
            metadata=CaptureMetadata.from_json(row["meta_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ExportAuditRecord:
    """Immutable record of one export attempt that reached the vault."""

    id: int
    capture_id: str
    vault_path: str
    hash_at_export: str | None
    mode: ExportMode
    error_flag: bool
    exported_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExportAuditRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            capture_id=row["capture_id"],
            vault_path=row["vault_path"],
            hash_at_export=row["hash_at_export"],
            mode=ExportMode(row["mode"]),
            error_flag=bool(row["error_flag"]),
            exported_at=row["exported_at"],
        )


@dataclass
class ErrorLogRecord:
    """Append-only diagnostic entry."""

    id: int
    capture_id: str | None
    operation: ErrorOperation
    error_class: str
    message: str
    attempt_count: int
    escalation_action: str | None
    dead_letter: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ErrorLogRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            capture_id=row["capture_id"],
            operation=ErrorOperation(row["operation"]),
            error_class=row["error_class"],
            message=row["message"],
            attempt_count=row["attempt_count"],
            escalation_action=row["escalation_action"],
            dead_letter=bool(row["dead_letter"]),
            created_at=row["created_at"],
        )


@dataclass
class ObservedItem:
    """
    A raw item handed over by a source adapter.

    raw_content is None for audio until transcription produces text.
    """

    source: CaptureSource
    native_id: str
    raw_content: str | None = None
    source_path: str | None = None
    partial_fingerprint: str | None = None
    attachment_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> CaptureMetadata:
        return CaptureMetadata(
            native_id=self.native_id,
            source_path=self.source_path,
            partial_fingerprint=self.partial_fingerprint,
            attachment_count=self.attachment_count,
            extra=dict(self.extra),
        )
