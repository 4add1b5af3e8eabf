"""Two-layer deduplication service.

Layer 1, (source, native_id), is enforced by the ledger at insert time.
This service adds:

- the audio fingerprint check, run before a voice memo is staged
- content-hash binding (layer 2), run once a capture's content is known

Binding is "late" for audio: the hash can only be computed after
transcription, so voice captures live with a null hash until then.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from capture_ledger.errors import DuplicateFingerprint
from capture_ledger.schemas.capture import CaptureRecord, CaptureSource, ErrorOperation
from capture_ledger.schemas.dedupe import compute_content_hash

if TYPE_CHECKING:
    from capture_ledger.state_store import LedgerStore
    from capture_ledger.vault import VaultWriter

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCheckResult:
    """Outcome of a content-hash lookup."""

    content_hash: str
    is_duplicate: bool
    original_capture_id: str | None = None
    original_vault_path: str | None = None


@dataclass
class BindResult:
    """Outcome of binding content to a capture."""

    capture: CaptureRecord
    content_hash: str
    duplicate: DuplicateCheckResult | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate is not None and self.duplicate.is_duplicate


class DeduplicationService:
    """Detects duplicate captures before they reach the vault.

    Usage:
        dedup = DeduplicationService(store, vault)
        result = dedup.bind_content(capture_id, transcript)
        if result.is_duplicate:
            ...  # resolve as exported_duplicate
    """

    def __init__(self, store: LedgerStore, vault: VaultWriter | None = None) -> None:
        self.store = store
        self.vault = vault

    def check_fingerprint(self, source: CaptureSource, fingerprint: str | None) -> None:
        """Reject a voice observation whose audio is already staged.

        Raises:
            DuplicateFingerprint: If another capture has the same fingerprint
        """
        if source != CaptureSource.VOICE or not fingerprint:
            return
        existing = self.store.find_by_partial_fingerprint(fingerprint)
        if existing is None:
            return

        error = DuplicateFingerprint(
            f"Audio fingerprint {fingerprint[:12]}... already staged as {existing.id}",
            existing_id=existing.id,
        )
        logger.info(error.message)
        self.store.log_error(
            operation=ErrorOperation.DEDUP,
            error_class=error.error_class,
            message=error.message,
            capture_id=existing.id,
        )
        raise error

    def check_content(self, content: str, capture_id: str | None = None) -> DuplicateCheckResult:
        """Look up the owner of the content's hash, ignoring `capture_id` itself."""
        content_hash = compute_content_hash(content)
        owner = self.store.find_by_content_hash(content_hash)
        if owner is None or owner.id == capture_id:
            return DuplicateCheckResult(content_hash=content_hash, is_duplicate=False)
        return DuplicateCheckResult(
            content_hash=content_hash,
            is_duplicate=True,
            original_capture_id=owner.id,
            original_vault_path=self._vault_path_of(owner.id),
        )

    def bind_content(self, capture_id: str, content: str) -> BindResult:
        """Compute the content hash and bind it to the capture.

        When another capture already owns the hash, nothing is bound and
        the result carries the duplicate details instead.

        Raises:
            CaptureNotFound, HashAlreadyBound, TerminalStateViolation,
            UniqueHashViolation
        """
        check = self.check_content(content, capture_id=capture_id)
        if check.is_duplicate:
            logger.info(
                f"Capture {capture_id} duplicates {check.original_capture_id} "
                f"(hash {check.content_hash[:12]}...)"
            )
            return BindResult(
                capture=self.store.require_capture(capture_id),
                content_hash=check.content_hash,
                duplicate=check,
            )

        capture = self.store.update_content_hash(capture_id, check.content_hash, content)
        return BindResult(capture=capture, content_hash=check.content_hash)

    def _vault_path_of(self, capture_id: str) -> str | None:
        """Where the original's note is (or will be) in the vault."""
        for audit in self.store.get_export_audits(capture_id):
            return audit.vault_path
        if self.vault is not None:
            return self.vault.relative_path(capture_id)
        return None
