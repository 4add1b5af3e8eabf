"""Atomic, idempotent export of captures into the vault.

A capture is exported at most once. The sequence is:

    render -> scratch write + fsync -> rename -> dir fsync
           -> audit row + terminal transition (one transaction)

A crash anywhere before the final transaction leaves the capture in its
non-terminal status, so the next run exports it again. If the note already
made it into the vault, the collision check recognises identical content
and records the export as a duplicate without writing a byte.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from capture_ledger.errors import (
    ExportConflict,
    ExporterHalted,
    VaultFatalError,
    VaultWriteError,
)
from capture_ledger.schemas.capture import (
    CaptureRecord,
    CaptureStatus,
    ErrorOperation,
    ExportMode,
)
from capture_ledger.vault.formatter import (
    body_hash,
    front_matter_value,
    render_note,
    render_placeholder,
    split_front_matter,
)
from capture_ledger.vault.writer import classify_os_error

if TYPE_CHECKING:
    from capture_ledger.services.deduplication import DuplicateCheckResult
    from capture_ledger.state_store import LedgerStore
    from capture_ledger.vault import VaultWriter

logger = logging.getLogger(__name__)

HALTED_EXPORT_CONFLICT = "export_conflict"


class ExportOutcome(str, Enum):
    """What export_to_vault did."""

    EXPORTED = "exported"
    DUPLICATE = "duplicate"
    PLACEHOLDER = "placeholder"
    INELIGIBLE = "ineligible"  # Nothing to do, no side effects


@dataclass
class ExportResult:
    """Result of one export call."""

    capture_id: str
    outcome: ExportOutcome
    vault_path: str | None = None
    mode: ExportMode | None = None
    bytes_written: int = 0
    audit_id: int | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        """True if the capture reached a terminal state in this call."""
        return self.outcome != ExportOutcome.INELIGIBLE


class AtomicExporter:
    """Writes eligible captures to the vault exactly once.

    Eligible means: status transcribed (normal note) or
    failed_transcription (placeholder), no audit row yet, and not blocked
    by a quarantine or an earlier conflict.

    After a fatal vault error (disk full, read-only filesystem) the exporter
    halts and refuses every further export until a new instance is created.
    """

    def __init__(self, store: LedgerStore, vault: VaultWriter) -> None:
        self.store = store
        self.vault = vault
        self.halted = False
        self.halt_reason: str | None = None

    def export_to_vault(self, capture_id: str) -> ExportResult:
        """Export one capture.

        Returns:
            ExportResult describing what happened

        Raises:
            CaptureNotFound: Unknown capture id
            ExporterHalted: A fatal vault error occurred earlier
            ExportConflict: Target exists with different content
            VaultWriteError: Recoverable write failure (capture unchanged)
            VaultFatalError: Disk full / read-only vault (exporter halts)
        """
        if self.halted:
            error = ExporterHalted(
                f"Exporter halted after fatal error: {self.halt_reason}", capture_id=capture_id
            )
            self.store.log_error(
                operation=ErrorOperation.EXPORT,
                error_class=error.error_class,
                message=error.message,
                capture_id=capture_id,
                escalation_action="halt_exports",
            )
            raise error

        capture = self.store.require_capture(capture_id)
        reason = self._ineligible_reason(capture)
        if reason:
            logger.debug(f"Capture {capture_id} not exported: {reason}")
            return ExportResult(capture_id, ExportOutcome.INELIGIBLE, reason=reason)

        placeholder = capture.status == CaptureStatus.FAILED_TRANSCRIPTION
        vault_path = self.vault.relative_path(capture.id)

        try:
            target_exists = self.vault.exists(vault_path)
        except OSError as e:
            raise self._vault_failure(classify_os_error(e, capture_id=capture.id)) from e

        if target_exists:
            return self._resolve_collision(capture, vault_path, placeholder)

        content = render_placeholder(capture) if placeholder else render_note(capture)
        try:
            outcome = self.vault.write_atomic(capture.id, content)
        except VaultWriteError as e:
            self._vault_failure(e)
            raise

        mode = ExportMode.PLACEHOLDER if placeholder else ExportMode.INITIAL
        audit = self.store.record_export(
            capture.id,
            vault_path=outcome.vault_path,
            mode=mode,
            hash_at_export=None if placeholder else capture.content_hash,
            error_flag=placeholder,
        )
        return ExportResult(
            capture_id=capture.id,
            outcome=ExportOutcome.PLACEHOLDER if placeholder else ExportOutcome.EXPORTED,
            vault_path=outcome.vault_path,
            mode=mode,
            bytes_written=outcome.bytes_written,
            audit_id=audit.id,
        )

    def export_duplicate(self, capture_id: str, duplicate: DuplicateCheckResult) -> ExportResult:
        """Resolve a content duplicate: audit row pointing at the original, no bytes written."""
        capture = self.store.require_capture(capture_id)
        original_id = duplicate.original_capture_id
        vault_path = duplicate.original_vault_path or self.vault.relative_path(original_id or "")
        metadata = dataclasses.replace(capture.metadata, duplicate_of=original_id)

        audit = self.store.record_export(
            capture.id,
            vault_path=vault_path,
            mode=ExportMode.DUPLICATE,
            hash_at_export=duplicate.content_hash,
            metadata=metadata,
        )
        return ExportResult(
            capture_id=capture.id,
            outcome=ExportOutcome.DUPLICATE,
            vault_path=vault_path,
            mode=ExportMode.DUPLICATE,
            audit_id=audit.id,
        )

    def _ineligible_reason(self, capture: CaptureRecord) -> str | None:
        if capture.status not in (CaptureStatus.TRANSCRIBED, CaptureStatus.FAILED_TRANSCRIPTION):
            return f"status is {capture.status.value}"
        if capture.metadata.is_blocked:
            return (
                f"blocked ({capture.metadata.halted_reason or capture.metadata.quarantine_reason})"
            )
        if self.store.has_export_audit(capture.id):
            return "already has an export audit row"
        if capture.status == CaptureStatus.TRANSCRIBED and not capture.content_hash:
            return "transcribed without a bound content hash"
        return None

    def _resolve_collision(
        self, capture: CaptureRecord, vault_path: str, placeholder: bool
    ) -> ExportResult:
        """Target already exists: idempotent duplicate or CRITICAL conflict.

        A note counts as identical only when both its declared content_hash
        and the hash of its actual body match the capture.
        """
        try:
            front_matter, body = split_front_matter(self.vault.read_text(vault_path))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read existing {vault_path}: {e}")
            front_matter, body = None, ""

        existing_hash = front_matter_value(front_matter, "content_hash") if front_matter else None
        existing_id = front_matter_value(front_matter, "id") if front_matter else None
        actual_hash = body_hash(body) if front_matter is not None else None

        is_identical = (
            front_matter is not None
            and not placeholder
            and existing_hash == capture.content_hash
            and actual_hash == capture.content_hash
        )
        if is_identical:
            logger.info(f"{vault_path} already holds identical content for {capture.id}")
            audit = self.store.record_export(
                capture.id,
                vault_path=vault_path,
                mode=ExportMode.DUPLICATE,
                hash_at_export=capture.content_hash,
            )
            return ExportResult(
                capture_id=capture.id,
                outcome=ExportOutcome.DUPLICATE,
                vault_path=vault_path,
                mode=ExportMode.DUPLICATE,
                audit_id=audit.id,
            )

        is_own_placeholder = (
            front_matter is not None
            and placeholder
            and existing_id == capture.id
            and existing_hash is None
        )
        if is_own_placeholder:
            logger.info(f"{vault_path} already holds the placeholder for {capture.id}")
            audit = self.store.record_export(
                capture.id,
                vault_path=vault_path,
                mode=ExportMode.PLACEHOLDER,
                hash_at_export=None,
                error_flag=True,
            )
            return ExportResult(
                capture_id=capture.id,
                outcome=ExportOutcome.PLACEHOLDER,
                vault_path=vault_path,
                mode=ExportMode.PLACEHOLDER,
                audit_id=audit.id,
            )

        error = ExportConflict(
            f"CRITICAL: {vault_path} exists with different content "
            f"(declared hash {existing_hash}, body hash {actual_hash}, "
            f"capture hash {capture.content_hash})",
            capture_id=capture.id,
            vault_path=vault_path,
        )
        logger.error(error.message)
        self.store.log_error(
            operation=ErrorOperation.EXPORT,
            error_class=error.error_class,
            message=error.message,
            capture_id=capture.id,
            escalation_action="manual_review",
        )
        self.store.update_metadata(
            capture.id,
            dataclasses.replace(capture.metadata, halted_reason=HALTED_EXPORT_CONFLICT),
        )
        raise error

    def _vault_failure(self, error: VaultWriteError) -> VaultWriteError:
        """Log a vault error; a fatal one halts the exporter."""
        capture = self.store.get_capture(error.capture_id) if error.capture_id else None
        attempts = capture.metadata.attempt_count if capture else 0
        if isinstance(error, VaultFatalError):
            self.halted = True
            self.halt_reason = error.message
            logger.error(f"Fatal vault error, halting exports: {error.message}")
            escalation = "halt_exports"
        else:
            logger.warning(f"Vault write failed for {error.capture_id}: {error.message}")
            escalation = "retry_later"
        self.store.log_error(
            operation=ErrorOperation.EXPORT,
            error_class=error.error_class,
            message=error.message,
            capture_id=error.capture_id,
            attempt_count=attempts,
            escalation_action=escalation,
        )
        return error
