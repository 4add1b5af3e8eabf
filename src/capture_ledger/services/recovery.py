"""Startup crash recovery.

Runs once before the processing loop starts. It finds every capture that
was in flight when the process stopped and either resumes it through the
normal processing path or quarantines it when its source is gone.

The reconciler is idempotent: a second run with no new input finds
nothing to change. Quarantined and halted captures are reported but left
alone, and a quarantine is only logged the first time it is detected.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from capture_ledger.errors import CaptureLedgerError, ExporterHalted, VaultFatalError
from capture_ledger.schemas.capture import (
    CaptureRecord,
    CaptureSource,
    CaptureStatus,
    ErrorOperation,
)

if TYPE_CHECKING:
    from capture_ledger.services.pipeline import CapturePipeline
    from capture_ledger.state_store import LedgerStore
    from capture_ledger.vault import VaultWriter

logger = logging.getLogger(__name__)

QUARANTINE_SOURCE_UNRESOLVABLE = "source_unresolvable"


@dataclass
class RecoveryResult:
    """Result of a startup reconciliation."""

    found: int = 0
    resumed: int = 0
    attempted: list[str] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    outcomes: dict[str, int] = field(default_factory=dict)
    stale_scratch_removed: int = 0
    errors: list[str] = field(default_factory=list)
    halted: bool = False

    @property
    def success(self) -> bool:
        return not self.halted and not self.errors


class RecoveryReconciler:
    """Detects and repairs captures left in flight by a crash.

    Usage:
        reconciler = RecoveryReconciler(store, pipeline, vault)
        result = reconciler.reconcile_on_startup()
    """

    def __init__(
        self,
        store: LedgerStore,
        pipeline: CapturePipeline,
        vault: VaultWriter | None = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.vault = vault

    def reconcile_on_startup(self) -> RecoveryResult:
        """Scan non-terminal captures oldest first and resume or quarantine each."""
        result = RecoveryResult()

        if self.vault is not None:
            result.stale_scratch_removed = len(self.vault.remove_stale_scratch())

        pending = self.store.list_non_terminal()
        result.found = len(pending)
        logger.info(f"Recovery: {result.found} captures in flight")

        for capture in pending:
            if capture.metadata.is_blocked:
                result.blocked.append(capture.id)
                continue

            if not self._source_resolves(capture):
                self._quarantine(capture)
                result.quarantined.append(capture.id)
                continue

            result.attempted.append(capture.id)
            try:
                outcome = self.pipeline.process_capture(capture.id)
            except (VaultFatalError, ExporterHalted) as e:
                logger.error(f"Recovery halted: {e}")
                result.errors.append(f"{capture.id}: {e}")
                result.halted = True
                break
            except CaptureLedgerError as e:
                result.errors.append(f"{capture.id}: {e}")
                continue

            result.resumed += 1
            result.outcomes[outcome.value] = result.outcomes.get(outcome.value, 0) + 1

        logger.info(
            f"Recovery complete: {result.resumed} resumed, "
            f"{len(result.quarantined)} quarantined, {len(result.blocked)} blocked"
        )
        return result

    def _source_resolves(self, capture: CaptureRecord) -> bool:
        """Re-validate the capture's source reference.

        Once content is bound (or transcription has failed for good) the
        ledger holds everything needed to finish, so the source is no
        longer consulted. Without an adapter for its source, an email
        capture always resolves and a voice capture needs its audio file.
        """
        if capture.content_hash is not None or capture.status != CaptureStatus.STAGED:
            return True
        adapter = self.pipeline.source_for(capture)
        if adapter is not None:
            return adapter.resolve(capture)
        if capture.source == CaptureSource.EMAIL:
            return True
        if capture.metadata.source_path:
            return Path(capture.metadata.source_path).is_file()
        return bool(capture.raw_content)

    def _quarantine(self, capture: CaptureRecord) -> None:
        reference = capture.metadata.source_path or capture.native_id
        message = f"Source reference no longer resolves: {reference}"
        logger.error(f"Quarantining {capture.id}: {message}")
        self.store.log_error(
            operation=ErrorOperation.RECOVERY,
            error_class="SourceUnresolvable",
            message=message,
            capture_id=capture.id,
            attempt_count=capture.metadata.attempt_count,
            escalation_action="manual_review",
            dead_letter=True,
        )
        self.store.update_metadata(
            capture.id,
            dataclasses.replace(
                capture.metadata, quarantine_reason=QUARANTINE_SOURCE_UNRESOLVABLE
            ),
        )

