"""
Collaborator interfaces.

The ledger never discovers, downloads or transcribes anything itself. It
consumes three kinds of collaborator:

- SourceAdapter: observes raw items and re-validates source references
- TranscriptionService: turns an audio reference into text or a
  classified failure
- the vault filesystem (see capture_ledger.vault.writer)
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from ..schemas.capture import CaptureRecord, CaptureSource, FailureInfo, ObservedItem


class TranscriptionErrorKind(str, Enum):
    """Why a transcription failed."""

    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    OOM = "oom"
    CORRUPT_AUDIO = "corrupt_audio"
    UNSUPPORTED_FORMAT = "unsupported_format"
    FILE_NOT_FOUND = "file_not_found"
    FILE_UNREADABLE = "file_unreadable"
    MODEL_LOAD_FAILURE = "model_load_failure"
    WHISPER_ERROR = "whisper_error"
    UNKNOWN = "unknown"


# Failures worth another attempt on a later cycle
RETRYABLE_KINDS = frozenset(
    {
        TranscriptionErrorKind.TIMEOUT,
        TranscriptionErrorKind.SERVICE_UNAVAILABLE,
    }
)


@dataclass(frozen=True)
class TranscriptionFailure:
    """A classified transcription error (returned, not raised)."""

    kind: TranscriptionErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def error_class(self) -> str:
        return f"Transcription{self.kind.value.title().replace('_', '')}"

    def to_failure_info(self, attempt_count: int) -> FailureInfo:
        return FailureInfo(kind=self.kind.value, message=self.message, attempt_count=attempt_count)


TranscriptionOutcome = str | TranscriptionFailure


@runtime_checkable
class SourceAdapter(Protocol):
    """Produces raw items for one capture source."""

    source: CaptureSource

    def observe(self) -> Iterable[ObservedItem]:
        """Yield items observed since the last call."""
        ...

    def resolve(self, capture: CaptureRecord) -> bool:
        """Check that a staged capture's source reference is still usable."""
        ...


@runtime_checkable
class TranscriptionService(Protocol):
    """Speech-to-text engine."""

    def transcribe(self, audio_ref: str) -> TranscriptionOutcome:
        """Transcribe an audio file, returning text or a classified failure."""
        ...


def classify_transcription_error(message: str) -> TranscriptionErrorKind:
    """
    Classify a transcription error from its message text.

    Used for engine error bodies and exceptions that carry no structured code.
    """
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return TranscriptionErrorKind.TIMEOUT
    if "enoent" in text or "no such file" in text:
        return TranscriptionErrorKind.FILE_NOT_FOUND
    if "eacces" in text or "permission denied" in text:
        return TranscriptionErrorKind.FILE_UNREADABLE
    if "invalid audio format" in text or "corrupt" in text:
        return TranscriptionErrorKind.CORRUPT_AUDIO
    if "unsupported" in text and "format" in text:
        return TranscriptionErrorKind.UNSUPPORTED_FORMAT
    if "model" in text and ("load" in text or "not found" in text):
        return TranscriptionErrorKind.MODEL_LOAD_FAILURE
    if "memory" in text or "heap" in text:
        return TranscriptionErrorKind.OOM
    if "whisper" in text:
        return TranscriptionErrorKind.WHISPER_ERROR
    return TranscriptionErrorKind.UNKNOWN
