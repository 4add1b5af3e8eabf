"""
Canonical schemas shared by every module.

No module defines its own near-identical capture model.
"""

from .capture import (
    EXPORT_MODE_STATUS,
    METADATA_VERSION,
    TERMINAL_STATUSES,
    CaptureMetadata,
    CaptureRecord,
    CaptureSource,
    CaptureStatus,
    ErrorLogRecord,
    ErrorOperation,
    ExportAuditRecord,
    ExportMode,
    FailureInfo,
    ObservedItem,
)
from .dedupe import (
    FINGERPRINT_BYTES,
    compute_audio_fingerprint,
    compute_content_hash,
    compute_partial_fingerprint,
    is_valid_hash,
    normalize_text,
    normalized_body,
    strip_markup,
)
from .ids import generate_capture_id, is_valid_capture_id

__all__ = [
    # Records
    "CaptureMetadata",
    "CaptureRecord",
    "CaptureSource",
    "CaptureStatus",
    "ErrorLogRecord",
    "ErrorOperation",
    "ExportAuditRecord",
    "ExportMode",
    "FailureInfo",
    "ObservedItem",
    "EXPORT_MODE_STATUS",
    "METADATA_VERSION",
    "TERMINAL_STATUSES",
    # Hashing
    "FINGERPRINT_BYTES",
    "compute_audio_fingerprint",
    "compute_content_hash",
    "compute_partial_fingerprint",
    "is_valid_hash",
    "normalize_text",
    "normalized_body",
    "strip_markup",
    # Ids
    "generate_capture_id",
    "is_valid_capture_id",
]
