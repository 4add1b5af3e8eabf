"""
Service layer: deduplication, export, processing, recovery and retention.
"""

from .deduplication import BindResult, DeduplicationService, DuplicateCheckResult
from .exporter import AtomicExporter, ExportOutcome, ExportResult
from .pipeline import CaptureOutcome, CapturePipeline, IngestResult, ProcessingSummary
from .recovery import RecoveryReconciler, RecoveryResult
from .retention import (
    RetentionService,
    SnapshotResult,
    SweepResult,
    VerificationStatus,
    escalation_for,
)

__all__ = [
    "AtomicExporter",
    "BindResult",
    "CaptureOutcome",
    "CapturePipeline",
    "DeduplicationService",
    "DuplicateCheckResult",
    "ExportOutcome",
    "ExportResult",
    "IngestResult",
    "ProcessingSummary",
    "RecoveryReconciler",
    "RecoveryResult",
    "RetentionService",
    "SnapshotResult",
    "SweepResult",
    "VerificationStatus",
    "escalation_for",
]
