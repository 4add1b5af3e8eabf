"""Capture processing pipeline.

Single-writer processing loop that drives each capture through:

    stage -> [transcribe] -> dedup -> transition -> export

Captures are consumed one at a time in creation order. Every I/O step
(transcription request, vault write) blocks the loop; the only point where
a shutdown request is honoured is between two captures.

Email captures have their content at staging time, so they skip
transcription: once the hash is bound they move staged -> transcribed
("content ready") and are exported.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from capture_ledger.adapters.base import TranscriptionFailure
from capture_ledger.errors import (
    CaptureLedgerError,
    DuplicateCapture,
    ExportConflict,
    ExporterHalted,
    InvalidCapture,
    VaultFatalError,
    VaultWriteError,
)
from capture_ledger.schemas.capture import (
    CaptureRecord,
    CaptureSource,
    CaptureStatus,
    ErrorOperation,
    ObservedItem,
)
from capture_ledger.services.exporter import ExportOutcome

if TYPE_CHECKING:
    from capture_ledger.adapters.base import (
        SourceAdapter,
        TranscriptionOutcome,
        TranscriptionService,
    )
    from capture_ledger.services.deduplication import DeduplicationService
    from capture_ledger.services.exporter import AtomicExporter
    from capture_ledger.state_store import LedgerStore

logger = logging.getLogger(__name__)


class CaptureOutcome(str, Enum):
    """Where a capture ended up after one processing step."""

    EXPORTED = "exported"
    DUPLICATE = "duplicate"
    PLACEHOLDER = "placeholder"
    AWAITING_TRANSCRIPTION = "awaiting_transcription"
    RETRY_LATER = "retry_later"  # Retryable transcription failure
    DEFERRED = "deferred"  # Transient vault error
    CONFLICT = "conflict"
    BLOCKED = "blocked"  # Quarantined or halted, needs manual review
    NOOP = "noop"


_EXPORT_OUTCOMES = {
    ExportOutcome.EXPORTED: CaptureOutcome.EXPORTED,
    ExportOutcome.DUPLICATE: CaptureOutcome.DUPLICATE,
    ExportOutcome.PLACEHOLDER: CaptureOutcome.PLACEHOLDER,
    ExportOutcome.INELIGIBLE: CaptureOutcome.NOOP,
}


@dataclass
class ProcessingSummary:
    """Result of one pass over pending captures."""

    processed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    halted: bool = False
    interrupted: bool = False

    def record(self, outcome: CaptureOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def count(self, outcome: CaptureOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)

    @property
    def success(self) -> bool:
        return not self.halted and not self.errors


@dataclass
class IngestResult:
    """Result of observing one source."""

    observed: int = 0
    staged: list[str] = field(default_factory=list)
    duplicates: int = 0
    rejected: int = 0


class CapturePipeline:
    """Stages observed items and drives them to the vault.

    Usage:
        pipeline = CapturePipeline(store, dedup, exporter, transcriber=client)
        pipeline.register_source(VoiceMemoFolderSource(folder, store))
        pipeline.ingest(source)
        summary = pipeline.process_pending()
    """

    def __init__(
        self,
        store: LedgerStore,
        dedup: DeduplicationService,
        exporter: AtomicExporter,
        transcriber: TranscriptionService | None = None,
        sources: Iterable[SourceAdapter] = (),
        max_transcription_attempts: int = 3,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Ledger store.
            dedup: Deduplication service.
            exporter: Vault exporter.
            transcriber: Speech-to-text engine; without one, voice captures
                wait for on_transcribed() to be called externally.
            sources: Source adapters used to re-validate source references.
            max_transcription_attempts: Retryable failures allowed before a
                capture is given up on and gets a placeholder.
        """
        self.store = store
        self.dedup = dedup
        self.exporter = exporter
        self.transcriber = transcriber
        self.max_transcription_attempts = max_transcription_attempts
        self.sources: dict[CaptureSource, SourceAdapter] = {}
        for source in sources:
            self.register_source(source)
        self._shutdown = threading.Event()

    def register_source(self, adapter: SourceAdapter) -> None:
        self.sources[CaptureSource(adapter.source)] = adapter

    def source_for(self, capture: CaptureRecord) -> SourceAdapter | None:
        return self.sources.get(capture.source)

    def request_shutdown(self) -> None:
        """Stop process_pending() before the next capture."""
        self._shutdown.set()

    # Intake

    def stage(self, item: ObservedItem) -> str:
        """Stage an observed item.

        Returns:
            The new capture id

        Raises:
            InvalidCapture: Malformed item
            DuplicateNativeId: (source, native_id) already staged
            DuplicateFingerprint: Same audio already staged
        """
        try:
            source = CaptureSource(item.source)
        except ValueError:
            error = InvalidCapture(f"Unknown capture source: {item.source!r}")
            self.store.log_error(ErrorOperation.STAGE, error.error_class, error.message)
            raise error from None

        self.dedup.check_fingerprint(source, item.partial_fingerprint)
        record = self.store.insert_capture(
            source,
            item.to_metadata(),
            raw_content=item.raw_content or "",
        )
        return record.id

    def ingest(self, source: SourceAdapter) -> IngestResult:
        """Observe a source and stage every new item.

        Rejections are already in the error log; they are only counted here.
        """
        result = IngestResult()
        for item in source.observe():
            result.observed += 1
            try:
                result.staged.append(self.stage(item))
            except DuplicateCapture:
                result.duplicates += 1
            except InvalidCapture:
                result.rejected += 1

        logger.info(
            f"Ingested {source.source.value}: {result.observed} observed, "
            f"{len(result.staged)} staged, {result.duplicates} duplicates, "
            f"{result.rejected} rejected"
        )
        return result

    # Transcription

    def on_transcribed(self, capture_id: str, outcome: TranscriptionOutcome) -> CaptureOutcome:
        """Apply a transcription result to a staged voice capture.

        Text binds the content hash (late binding) and continues to export;
        a classified failure is retried later or resolved with a placeholder.
        """
        capture = self.store.require_capture(capture_id)
        if capture.status != CaptureStatus.STAGED:
            logger.warning(
                f"Ignoring transcription for {capture_id}: status is {capture.status.value}"
            )
            return CaptureOutcome.NOOP

        if isinstance(outcome, TranscriptionFailure):
            return self._handle_transcription_failure(capture, outcome)
        return self._bind_and_export(capture, outcome)

    def _handle_transcription_failure(
        self, capture: CaptureRecord, failure: TranscriptionFailure
    ) -> CaptureOutcome:
        attempts = capture.metadata.attempt_count + 1
        exhausted = failure.retryable and attempts >= self.max_transcription_attempts
        permanent = not failure.retryable or exhausted
        metadata = dataclasses.replace(
            capture.metadata,
            attempt_count=attempts,
            failure=failure.to_failure_info(attempts),
        )

        self.store.log_error(
            operation=ErrorOperation.TRANSCRIBE,
            error_class=failure.error_class,
            message=failure.message,
            capture_id=capture.id,
            attempt_count=attempts,
            escalation_action="placeholder" if permanent else "retry_later",
            dead_letter=exhausted,
        )

        if not permanent:
            logger.warning(
                f"Transcription of {capture.id} failed ({failure.kind.value}), "
                f"attempt {attempts}/{self.max_transcription_attempts}"
            )
            self.store.update_metadata(capture.id, metadata)
            return CaptureOutcome.RETRY_LATER

        logger.error(
            f"Transcription of {capture.id} failed permanently ({failure.kind.value}) "
            f"after {attempts} attempts"
        )
        self.store.transition_status(
            capture.id, CaptureStatus.FAILED_TRANSCRIPTION, metadata=metadata
        )
        return self._export(capture.id)

    # Processing

    def _bind_and_export(self, capture: CaptureRecord, content: str) -> CaptureOutcome:
        result = self.dedup.bind_content(capture.id, content)
        if result.is_duplicate and result.duplicate is not None:
            self.exporter.export_duplicate(capture.id, result.duplicate)
            return CaptureOutcome.DUPLICATE

        self.store.transition_status(capture.id, CaptureStatus.TRANSCRIBED)
        return self._export(capture.id)

    def _export(self, capture_id: str) -> CaptureOutcome:
        try:
            result = self.exporter.export_to_vault(capture_id)
        except ExportConflict:
            return CaptureOutcome.CONFLICT
        except (VaultFatalError, ExporterHalted):
            raise
        except VaultWriteError:
            return CaptureOutcome.DEFERRED
        return _EXPORT_OUTCOMES[result.outcome]

    def process_capture(self, capture_id: str) -> CaptureOutcome:
        """Advance one capture as far as it can go right now."""
        capture = self.store.require_capture(capture_id)
        if capture.is_terminal:
            return CaptureOutcome.NOOP
        if capture.metadata.is_blocked:
            return CaptureOutcome.BLOCKED

        if capture.status == CaptureStatus.STAGED:
            if capture.source == CaptureSource.EMAIL or capture.content_hash is not None:
                return self._bind_and_export(capture, capture.raw_content)
            if self.transcriber is None:
                return CaptureOutcome.AWAITING_TRANSCRIPTION
            audio_ref = capture.metadata.source_path or capture.native_id
            return self.on_transcribed(capture.id, self.transcriber.transcribe(audio_ref))

        return self._export(capture.id)

    def process_pending(
        self,
        stop_event: threading.Event | None = None,
        skip: Iterable[str] = (),
    ) -> ProcessingSummary:
        """Process every non-terminal capture once, oldest first.

        A fatal vault error stops the pass (halted=True). A shutdown request
        is honoured between captures (interrupted=True). Ids in skip were
        already handled in this run and are left for the next one.
        """
        summary = ProcessingSummary()
        skipped = set(skip)
        for capture in self.store.list_non_terminal():
            if capture.id in skipped:
                continue
            if self._shutdown.is_set() or (stop_event is not None and stop_event.is_set()):
                logger.info("Shutdown requested, stopping between captures")
                summary.interrupted = True
                break
            if capture.metadata.is_blocked:
                summary.record(CaptureOutcome.BLOCKED)
                continue
            try:
                outcome = self.process_capture(capture.id)
            except (VaultFatalError, ExporterHalted) as e:
                logger.error(f"Processing halted: {e}")
                summary.errors.append(f"{capture.id}: {e}")
                summary.halted = True
                break
            except CaptureLedgerError as e:
                # Already in the error log; move on to the next capture
                summary.errors.append(f"{capture.id}: {e}")
                continue
            summary.record(outcome)

        logger.info(
            f"Processed {summary.processed} captures: {summary.outcomes}"
            + (" (halted)" if summary.halted else "")
        )
        return summary

    def release(self, capture_id: str) -> CaptureRecord:
        """Clear a quarantine or halt flag after manual review."""
        capture = self.store.require_capture(capture_id)
        metadata = dataclasses.replace(
            capture.metadata, quarantine_reason=None, halted_reason=None
        )
        logger.info(f"Releasing capture {capture_id} for automatic processing")
        return self.store.update_metadata(capture_id, metadata)
