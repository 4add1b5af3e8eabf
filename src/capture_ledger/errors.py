"""
Error taxonomy for the capture ledger.

Every error carries a category so callers can decide between surfacing it,
retrying later, or halting the processing loop:

- INPUT: malformed or duplicate observations, rejected at the boundary
- TRANSIENT_IO: vault unreachable or locked, retried on a later cycle
- FATAL_RESOURCE: disk full or read-only vault, halts all exports
- TRANSCRIPTION: speech-to-text failures (retryable or permanent)
- INTEGRITY: invariant violations, surfaced for manual review
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Broad class of an error, used for escalation decisions."""

    INPUT = "input"
    TRANSIENT_IO = "transient_io"
    FATAL_RESOURCE = "fatal_resource"
    TRANSCRIPTION = "transcription"
    INTEGRITY = "integrity"


class CaptureLedgerError(Exception):
    """Base class for all capture ledger errors."""

    category: ErrorCategory = ErrorCategory.INTEGRITY

    def __init__(self, message: str, capture_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.capture_id = capture_id

    @property
    def error_class(self) -> str:
        """Stable identifier written to the error log."""
        return type(self).__name__


# Input errors


class InvalidCapture(CaptureLedgerError):
    """Observed item or capture data is malformed."""

    category = ErrorCategory.INPUT


class CaptureNotFound(CaptureLedgerError):
    """No capture exists with the given id."""

    category = ErrorCategory.INPUT


class DuplicateCapture(CaptureLedgerError):
    """An observation that the ledger already holds."""

    category = ErrorCategory.INPUT

    def __init__(self, message: str, existing_id: str | None = None):
        super().__init__(message, capture_id=existing_id)
        self.existing_id = existing_id


class DuplicateNativeId(DuplicateCapture):
    """(source, native_id) is already staged."""


class DuplicateFingerprint(DuplicateCapture):
    """An audio file with the same partial fingerprint is already staged."""


# Integrity errors


class HashAlreadyBound(CaptureLedgerError):
    """Attempt to replace a content hash that is already bound."""


class UniqueHashViolation(CaptureLedgerError):
    """Another capture already owns this content hash."""

    def __init__(self, message: str, capture_id: str | None = None, owner_id: str | None = None):
        super().__init__(message, capture_id=capture_id)
        self.owner_id = owner_id


class InvalidTransition(CaptureLedgerError):
    """Status change not allowed by the state machine."""


class TerminalStateViolation(InvalidTransition):
    """Attempt to change a capture that is already in a terminal state."""


class ExportConflict(CaptureLedgerError):
    """Vault target exists with different content (CRITICAL)."""

    def __init__(self, message: str, capture_id: str | None = None, vault_path: str | None = None):
        super().__init__(message, capture_id=capture_id)
        self.vault_path = vault_path


# Vault I/O errors


class VaultWriteError(CaptureLedgerError):
    """Recoverable vault write failure (permissions, network, lock)."""

    category = ErrorCategory.TRANSIENT_IO

    def __init__(self, message: str, capture_id: str | None = None, errno_code: str | None = None):
        super().__init__(message, capture_id=capture_id)
        self.errno_code = errno_code


class VaultFatalError(VaultWriteError):
    """Unrecoverable vault failure (disk full, read-only filesystem)."""

    category = ErrorCategory.FATAL_RESOURCE


class ExporterHalted(CaptureLedgerError):
    """Exporter refused work after a fatal resource error."""

    category = ErrorCategory.FATAL_RESOURCE
