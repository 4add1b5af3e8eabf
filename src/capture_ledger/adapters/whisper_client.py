"""
HTTP client for a whisper.cpp-style transcription server.

The server exposes POST /inference taking a multipart `file` field and
answering {"text": "..."} on success or {"error": "..."} on failure.

transcribe() never raises for engine or network problems: every failure
comes back as a TranscriptionFailure with a kind the pipeline uses to
decide between retrying later and writing a placeholder.
"""

import logging
from pathlib import Path
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    TranscriptionErrorKind,
    TranscriptionFailure,
    TranscriptionOutcome,
    classify_transcription_error,
)

logger = logging.getLogger(__name__)

# HTTP statuses meaning "server busy or restarting"
UNAVAILABLE_STATUSES = {429, 502, 503, 504}


class WhisperClient:
    """
    Client for a local whisper.cpp server.

    Features:
    - Multipart upload of the audio file
    - Automatic retry with backoff on connection resets
    - Classification of every failure mode
    """

    DEFAULT_TIMEOUT = 300
    INFERENCE_ENDPOINT = "/inference"

    def __init__(
        self,
        base_url: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
        response_format: str = "json",
    ):
        """
        Initialize whisper client.

        Args:
            base_url: Server URL (e.g., "http://localhost:8178")
            timeout: Request timeout in seconds (long recordings take a while)
            max_retries: Maximum retry attempts on connection failures
            backoff_factor: Backoff factor for retries
            response_format: Response format requested from the server
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.response_format = response_format

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        # Only connection-level retries: a POST that reached the model is not replayed
        retry_strategy = Retry(
            total=max_retries,
            connect=max_retries,
            read=0,
            status=0,
            backoff_factor=backoff_factor,
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def transcribe(self, audio_ref: str) -> TranscriptionOutcome:
        """
        Transcribe an audio file.

        Args:
            audio_ref: Path to the audio file on local disk

        Returns:
            Transcript text, or a TranscriptionFailure
        """
        path = Path(audio_ref)
        url = f"{self.base_url}{self.INFERENCE_ENDPOINT}"

        try:
            with open(path, "rb") as f:
                response = self.session.post(
                    url,
                    files={"file": (path.name, f, "application/octet-stream")},
                    data={"response_format": self.response_format},
                    timeout=self.timeout,
                )
        # RequestException subclasses OSError, so network errors are matched first
        except requests.exceptions.Timeout as e:
            return self._failure(
                TranscriptionErrorKind.TIMEOUT,
                f"Transcription timed out after {self.timeout}s: {e}",
                path,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.RetryError) as e:
            return self._failure(
                TranscriptionErrorKind.SERVICE_UNAVAILABLE,
                f"Failed to connect to whisper at {self.base_url}: {e}",
                path,
            )
        except requests.exceptions.RequestException as e:
            return self._failure(classify_transcription_error(str(e)), str(e), path)
        except FileNotFoundError as e:
            return self._failure(TranscriptionErrorKind.FILE_NOT_FOUND, f"ENOENT: {e}", path)
        except PermissionError as e:
            return self._failure(TranscriptionErrorKind.FILE_UNREADABLE, f"EACCES: {e}", path)
        except OSError as e:
            return self._failure(TranscriptionErrorKind.FILE_UNREADABLE, str(e), path)

        return self._parse_response(response, path)

    def _parse_response(self, response: requests.Response, path: Path) -> TranscriptionOutcome:
        error_text = self._error_text(response)

        if not response.ok:
            message = f"Whisper API error {response.status_code}: {error_text or response.reason}"
            if response.status_code in UNAVAILABLE_STATUSES:
                kind = TranscriptionErrorKind.SERVICE_UNAVAILABLE
            elif response.status_code == 415:
                kind = TranscriptionErrorKind.UNSUPPORTED_FORMAT
            else:
                kind = classify_transcription_error(error_text or "")
                if kind == TranscriptionErrorKind.UNKNOWN:
                    kind = (
                        TranscriptionErrorKind.CORRUPT_AUDIO
                        if response.status_code in (400, 422)
                        else TranscriptionErrorKind.WHISPER_ERROR
                    )
            return self._failure(kind, message, path)

        if error_text:
            return self._failure(classify_transcription_error(error_text), error_text, path)

        try:
            data = response.json()
        except ValueError:
            text = response.text
        else:
            text = data.get("text", "") if isinstance(data, dict) else ""

        text = str(text or "").strip()
        if not text:
            return self._failure(
                TranscriptionErrorKind.WHISPER_ERROR, "Whisper returned an empty transcript", path
            )

        logger.debug(f"Transcribed {path.name}: {len(text)} chars")
        return text

    @staticmethod
    def _error_text(response: requests.Response) -> Optional[str]:
        """Error message from a JSON body, or the raw body of a failed response."""
        try:
            data = response.json()
        except ValueError:
            return None if response.ok else (response.text or None)
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return None

    @staticmethod
    def _failure(kind: TranscriptionErrorKind, message: str, path: Path) -> TranscriptionFailure:
        logger.warning(f"Transcription of {path.name} failed ({kind.value}): {message}")
        return TranscriptionFailure(kind=kind, message=message)
