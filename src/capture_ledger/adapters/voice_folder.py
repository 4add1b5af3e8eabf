"""
Voice memo folder source.

Watches a locally-synced folder (e.g. the Voice Memos recordings directory)
for new audio files. Cloud discovery and download are someone else's job:
a file is observed only once it is fully present on local disk.

The cursor (newest modification time seen) is persisted in
sync_state["voice_last_poll"]. It advances only after every observed item
has been handed to the caller, so an interrupted poll re-observes the same
files and layer-1 dedup absorbs them.
"""

import logging
from collections.abc import Iterator
from pathlib import Path

from ..schemas.capture import CaptureRecord, CaptureSource, ObservedItem
from ..schemas.dedupe import FINGERPRINT_BYTES, compute_audio_fingerprint
from ..state_store import LedgerStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "voice_last_poll"
DEFAULT_EXTENSIONS = (".m4a",)


class VoiceMemoFolderSource:
    """SourceAdapter for a folder of audio recordings."""

    source = CaptureSource.VOICE

    def __init__(
        self,
        folder: Path | str,
        store: LedgerStore,
        extensions: tuple[str, ...] = DEFAULT_EXTENSIONS,
        fingerprint_bytes: int = FINGERPRINT_BYTES,
    ):
        self.folder = Path(folder)
        self.store = store
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.fingerprint_bytes = fingerprint_bytes

    def scan(self) -> list[Path]:
        """Audio files in the folder, sorted by name."""
        if not self.folder.is_dir():
            logger.warning(f"Voice memo folder does not exist: {self.folder}")
            return []
        return sorted(
            p for p in self.folder.iterdir() if p.is_file() and p.suffix.lower() in self.extensions
        )

    def get_cursor(self) -> float | None:
        raw = self.store.get_sync_value(CURSOR_KEY)
        return float(raw) if raw is not None else None

    def observe(self) -> Iterator[ObservedItem]:
        """Yield files modified after the cursor, then advance it."""
        cursor = self.get_cursor()
        observed: list[float] = []
        # Skipped files must stay above the cursor so a later poll sees them
        skipped_floor: float | None = None
        blocked = False

        for path in self.scan():
            try:
                stat = path.stat()
            except OSError as e:
                logger.warning(f"Skipping voice memo {path.name}: {e}")
                blocked = True
                continue
            if cursor is not None and stat.st_mtime <= cursor:
                continue
            try:
                fingerprint = compute_audio_fingerprint(path, self.fingerprint_bytes)
            except OSError as e:
                logger.warning(f"Skipping unreadable voice memo {path.name}: {e}")
                skipped_floor = (
                    stat.st_mtime if skipped_floor is None else min(skipped_floor, stat.st_mtime)
                )
                continue

            yield ObservedItem(
                source=CaptureSource.VOICE,
                native_id=path.name,
                source_path=str(path.resolve()),
                partial_fingerprint=fingerprint,
                extra={"size_bytes": stat.st_size},
            )
            observed.append(stat.st_mtime)

        logger.info(f"Voice folder poll: {len(observed)} new files in {self.folder}")
        if blocked:
            return
        eligible = [m for m in observed if skipped_floor is None or m < skipped_floor]
        if eligible and (cursor is None or max(eligible) > cursor):
            self.store.set_sync_value(CURSOR_KEY, repr(max(eligible)))

    def resolve(self, capture: CaptureRecord) -> bool:
        """A voice capture is resolvable while its audio file still exists."""
        source_path = capture.metadata.source_path
        return bool(source_path) and Path(source_path).is_file()
