"""Backup verification and retention sweep.

Destructive work only happens behind a verified snapshot:

1. create_snapshot() copies the live ledger with the SQLite backup API and
   verifies the copy (PRAGMA integrity_check plus a logical hash of every
   row compared against the live ledger).
2. sweep_retention() deletes exported captures older than the retention
   window, but only if the most recent verification passed.

Consecutive verification failures escalate:

    0 -> healthy, 1 -> warn, 2 -> degraded_backup, 3+ -> halt_pruning

At halt_pruning old snapshots are no longer pruned, so the last good copy
is never rotated away while backups are failing.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from capture_ledger.schemas.capture import ErrorOperation
from capture_ledger.state_store import compute_logical_digest, format_timestamp

if TYPE_CHECKING:
    from capture_ledger.state_store import LedgerStore

logger = logging.getLogger(__name__)

VERIFICATION_KEY = "backup_verification"
SNAPSHOT_PREFIX = "ledger-"
SNAPSHOT_SUFFIX = ".sqlite"


class VerificationStatus(str, Enum):
    """Backup health, escalating with consecutive failures."""

    HEALTHY = "healthy"
    WARN = "warn"
    DEGRADED_BACKUP = "degraded_backup"
    HALT_PRUNING = "halt_pruning"


def escalation_for(consecutive_failures: int) -> VerificationStatus:
    if consecutive_failures <= 0:
        return VerificationStatus.HEALTHY
    if consecutive_failures == 1:
        return VerificationStatus.WARN
    if consecutive_failures == 2:
        return VerificationStatus.DEGRADED_BACKUP
    return VerificationStatus.HALT_PRUNING


@dataclass
class SnapshotResult:
    """Outcome of one snapshot + verification."""

    path: Path | None
    verified: bool
    status: VerificationStatus
    consecutive_failures: int = 0
    integrity: list[str] = field(default_factory=list)
    live_digest: str | None = None
    snapshot_digest: str | None = None
    error: str | None = None


@dataclass
class SweepResult:
    """Outcome of one retention sweep."""

    skipped: bool
    reason: str | None = None
    cutoff: str | None = None
    deleted: list[str] = field(default_factory=list)


class RetentionService:
    """Snapshots, verifies and prunes the ledger.

    Scheduling is up to the caller; every method runs synchronously.
    """

    def __init__(
        self,
        store: LedgerStore,
        backup_dir: Path | str,
        window_days: int = 90,
        keep_snapshots: int = 24,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.window_days = window_days
        self.keep_snapshots = keep_snapshots
        self.clock = clock or store.clock

    # Snapshots

    def _snapshot_path(self) -> Path:
        stamp = self.clock().strftime("%Y%m%d-%H%M%S")
        path = self.backup_dir / f"{SNAPSHOT_PREFIX}{stamp}{SNAPSHOT_SUFFIX}"
        counter = 1
        while path.exists():
            path = self.backup_dir / f"{SNAPSHOT_PREFIX}{stamp}-{counter}{SNAPSHOT_SUFFIX}"
            counter += 1
        return path

    def list_snapshots(self) -> list[Path]:
        """Snapshot files, oldest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob(f"{SNAPSHOT_PREFIX}*{SNAPSHOT_SUFFIX}"))

    def verification_state(self) -> dict[str, Any] | None:
        """Last persisted verification outcome."""
        return self.store.get_sync_json(VERIFICATION_KEY)

    def verify_snapshot(self, path: Path) -> tuple[list[str], str]:
        """
        Check a snapshot file.

        Returns:
            (integrity_check rows, logical digest of the snapshot)

        Raises:
            sqlite3.Error: If the snapshot cannot be opened or read
        """
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            integrity = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
            snapshot_digest = compute_logical_digest(conn)
        finally:
            conn.close()
        return integrity, snapshot_digest

    def create_snapshot(self) -> SnapshotResult:
        """Copy the ledger, verify the copy and record the outcome."""
        previous = self.verification_state() or {}
        path: Path | None = None
        integrity: list[str] = []
        live_digest = snapshot_digest = None
        error: str | None = None

        try:
            live_digest = self.store.logical_digest()
            path = self.store.backup_to(self._snapshot_path())
            integrity, snapshot_digest = self.verify_snapshot(path)
            if integrity != ["ok"]:
                error = f"integrity_check failed: {'; '.join(integrity[:5])}"
            elif snapshot_digest != live_digest:
                error = "logical hash mismatch between snapshot and live ledger"
        except (sqlite3.Error, OSError) as e:
            error = f"snapshot failed: {e}"

        verified = error is None
        failures = 0 if verified else int(previous.get("consecutive_failures", 0)) + 1
        status = escalation_for(failures)

        self.store.set_sync_json(
            VERIFICATION_KEY,
            {
                "snapshot": str(path) if path else None,
                "verified": verified,
                "consecutive_failures": failures,
                "status": status.value,
                "checked_at": format_timestamp(self.clock()),
                "error": error,
            },
        )

        if verified:
            logger.info(f"Snapshot verified: {path}")
        else:
            logger.error(f"Snapshot verification failed ({status.value}): {error}")
            self.store.log_error(
                operation=ErrorOperation.BACKUP,
                error_class="BackupVerificationFailed",
                message=f"{path}: {error}" if path else str(error),
                attempt_count=failures,
                escalation_action=status.value,
            )

        return SnapshotResult(
            path=path,
            verified=verified,
            status=status,
            consecutive_failures=failures,
            integrity=integrity,
            live_digest=live_digest,
            snapshot_digest=snapshot_digest,
            error=error,
        )

    def prune_snapshots(self, keep: int | None = None) -> list[Path]:
        """Delete the oldest snapshots beyond `keep`.

        Nothing is pruned while backups are escalated to halt_pruning, and
        the most recent verified snapshot is always kept.
        """
        keep = self.keep_snapshots if keep is None else keep
        state = self.verification_state() or {}
        if state.get("status") == VerificationStatus.HALT_PRUNING.value:
            logger.warning("Snapshot pruning halted after repeated verification failures")
            return []

        protected = state.get("snapshot") if state.get("verified") else None
        snapshots = self.list_snapshots()
        excess = snapshots[: max(len(snapshots) - keep, 0)]
        removed = []
        for path in excess:
            if protected and str(path) == protected:
                continue
            path.unlink(missing_ok=True)
            removed.append(path)
        if removed:
            logger.info(f"Pruned {len(removed)} old snapshots")
        return removed

    # Retention

    def sweep_retention(self) -> SweepResult:
        """Delete exported captures older than the retention window.

        Skipped unless the most recent snapshot verification passed. Never
        touches non-terminal captures or the error log.
        """
        state = self.verification_state()
        if not state:
            logger.warning("Retention sweep skipped: no verified snapshot yet")
            return SweepResult(skipped=True, reason="no verified snapshot")
        if not state.get("verified"):
            logger.warning("Retention sweep skipped: most recent snapshot verification failed")
            return SweepResult(skipped=True, reason="most recent verification failed")

        cutoff = self.clock() - timedelta(days=self.window_days)
        deleted = self.store.delete_terminal_captures_before(cutoff)
        logger.info(f"Retention sweep removed {len(deleted)} captures older than {cutoff:%Y-%m-%d}")
        return SweepResult(skipped=False, cutoff=format_timestamp(cutoff), deleted=deleted)

    def run_maintenance(self) -> tuple[SnapshotResult, SweepResult]:
        """Snapshot, then sweep, then prune."""
        snapshot = self.create_snapshot()
        sweep = self.sweep_retention()
        self.prune_snapshots()
        return snapshot, sweep
