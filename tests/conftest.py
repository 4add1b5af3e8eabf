"""Test fixtures and utilities."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from capture_ledger.adapters.base import TranscriptionFailure
from capture_ledger.schemas.capture import (
    CaptureMetadata,
    CaptureRecord,
    CaptureSource,
    ObservedItem,
)
from capture_ledger.services import (
    AtomicExporter,
    CapturePipeline,
    DeduplicationService,
)
from capture_ledger.state_store import LedgerStore
from capture_ledger.vault import VaultWriter

# Plain-text email body with irregular whitespace
SAMPLE_EMAIL_BODY = """Reminder:   call the plumber

about the   kitchen sink\r\nbefore Friday.
"""

SAMPLE_EMAIL_HTML = """<html><head><style>p { color: red; }</style></head>
<body><p>Reminder: call the plumber</p><p>about the kitchen sink</p></body></html>
"""

SAMPLE_TRANSCRIPT = "Idea for the garden: plant tomatoes along the south fence."

START_TIME = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for deterministic timestamps."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTranscriber:
    """TranscriptionService returning queued outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    def transcribe(self, audio_ref: str):
        self.calls.append(audio_ref)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


class FakeSource:
    """SourceAdapter over a fixed list of items."""

    def __init__(self, source: CaptureSource, items=(), resolvable: bool = True):
        self.source = source
        self.items = list(items)
        self.resolvable = resolvable

    def observe(self):
        yield from self.items

    def resolve(self, capture: CaptureRecord) -> bool:
        return self.resolvable


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_ledger.db"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(temp_db, clock) -> LedgerStore:
    """Fresh ledger store with a controllable clock."""
    return LedgerStore(temp_db, clock=clock)


@pytest.fixture
def vault(tmp_path) -> VaultWriter:
    return VaultWriter(tmp_path / "vault")


@pytest.fixture
def dedup(store, vault) -> DeduplicationService:
    return DeduplicationService(store, vault)


@pytest.fixture
def exporter(store, vault) -> AtomicExporter:
    return AtomicExporter(store, vault)


@pytest.fixture
def pipeline(store, dedup, exporter) -> CapturePipeline:
    """Pipeline without a transcriber (voice captures wait for on_transcribed)."""
    return CapturePipeline(store, dedup, exporter)


@pytest.fixture
def make_email(store):
    """Factory staging an email capture directly in the ledger."""

    def _make(native_id: str = "<msg-1@example.com>", body: str = SAMPLE_EMAIL_BODY):
        return store.insert_capture(
            CaptureSource.EMAIL, CaptureMetadata(native_id=native_id), raw_content=body
        )

    return _make


@pytest.fixture
def make_voice(store, tmp_path):
    """Factory staging a voice capture backed by a real audio file."""

    def _make(name: str = "memo-001.m4a", data: bytes = b"\x00\x00\x00\x20ftypM4A fake audio"):
        audio_dir = tmp_path / "recordings"
        audio_dir.mkdir(exist_ok=True)
        path = audio_dir / name
        path.write_bytes(data)
        return store.insert_capture(
            CaptureSource.VOICE,
            CaptureMetadata(native_id=name, source_path=str(path)),
        )

    return _make


def email_item(native_id: str, body: str = SAMPLE_EMAIL_BODY) -> ObservedItem:
    return ObservedItem(source=CaptureSource.EMAIL, native_id=native_id, raw_content=body)


def voice_item(path: Path, fingerprint: str | None = None) -> ObservedItem:
    return ObservedItem(
        source=CaptureSource.VOICE,
        native_id=path.name,
        source_path=str(path),
        partial_fingerprint=fingerprint,
    )


def failure(kind, message: str = "engine error") -> TranscriptionFailure:
    return TranscriptionFailure(kind=kind, message=message)
