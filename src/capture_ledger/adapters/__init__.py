"""
Collaborator adapters: capture sources and transcription engines.
"""

from .base import (
    RETRYABLE_KINDS,
    SourceAdapter,
    TranscriptionErrorKind,
    TranscriptionFailure,
    TranscriptionOutcome,
    TranscriptionService,
    classify_transcription_error,
)
from .voice_folder import VoiceMemoFolderSource
from .whisper_client import WhisperClient

__all__ = [
    "RETRYABLE_KINDS",
    "SourceAdapter",
    "TranscriptionErrorKind",
    "TranscriptionFailure",
    "TranscriptionOutcome",
    "TranscriptionService",
    "VoiceMemoFolderSource",
    "WhisperClient",
    "classify_transcription_error",
]
