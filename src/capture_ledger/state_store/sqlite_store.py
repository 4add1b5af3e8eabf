"""
SQLite-based ledger store.

Tables:
- captures: observed items, their status and content hash
- export_audit: immutable record of every export that reached the vault
- error_log: append-only diagnostics (exempt from retention)
- sync_state: collaborator checkpoints and ledger bookkeeping

Durability model:
- WAL journal with synchronous=FULL: a committed write survives power loss
- Every write runs in BEGIN IMMEDIATE ... COMMIT on its own connection,
  so it is durable before the method returns
- Readers use separate connections and see WAL snapshots

Invariant violations detected here are appended to error_log (after the
failed transaction has rolled back) and then raised.
"""

import hashlib
import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import (
    CaptureLedgerError,
    CaptureNotFound,
    DuplicateNativeId,
    HashAlreadyBound,
    InvalidCapture,
    InvalidTransition,
    TerminalStateViolation,
    UniqueHashViolation,
)
from ..schemas.capture import (
    EXPORT_MODE_STATUS,
    TERMINAL_STATUSES,
    CaptureMetadata,
    CaptureRecord,
    CaptureSource,
    CaptureStatus,
    ErrorLogRecord,
    ErrorOperation,
    ExportAuditRecord,
    ExportMode,
)
from ..schemas.dedupe import is_valid_hash
from ..schemas.ids import generate_capture_id, is_valid_capture_id
from ..state_machine import assert_valid_transition

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Tables covered by the logical digest, with their stable ordering
LEDGER_TABLES = {
    "captures": "id",
    "export_audit": "id",
    "error_log": "id",
    "sync_state": "key",
}

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a sortable UTC ISO timestamp."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.strftime(TIMESTAMP_FORMAT)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore:
    """
    SQLite-based staging ledger.

    Single-writer: one process owns writes, any number of readers may
    open the same file concurrently.
    """

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize ledger store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout_ms: How long a connection waits on a locked database
            clock: Source of "now" for timestamps (tests inject a fixed clock)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms
        self.clock = clock or _utc_now
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _now(self) -> str:
        return format_timestamp(self.clock())

    def _get_connection(self) -> sqlite3.Connection:
        """Get an autocommit connection with row factory and ledger pragmas."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA synchronous = FULL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; takes the write lock up front."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        """Read-only snapshot."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN")
            yield conn
        finally:
            if conn.in_transaction:
                conn.execute("COMMIT")
            conn.close()

    def _init_db(self) -> None:
        """Switch the database to WAL (persistent, so done once per file)."""
        conn = self._get_connection()
        try:
            mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
            if str(mode).lower() != "wal":
                logger.warning(f"Could not enable WAL journal (got {mode}) for {self.db_path}")
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).run_pending()
        finally:
            conn.close()

    def schema_version(self) -> int:
        """Applied migration version."""
        with self._read() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def _record_failure(self, error: CaptureLedgerError, operation: ErrorOperation) -> None:
        """Append a store-level violation to the error log."""
        logger.warning(f"{error.error_class} during {operation.value}: {error.message}")
        self.log_error(
            operation=operation,
            error_class=error.error_class,
            message=error.message,
            capture_id=error.capture_id,
        )

    @staticmethod
    def _fetch_capture(conn: sqlite3.Connection, capture_id: str) -> CaptureRecord:
        row = conn.execute("SELECT * FROM captures WHERE id = ?", (capture_id,)).fetchone()
        if row is None:
            raise CaptureNotFound(f"Capture not found: {capture_id}")
        return CaptureRecord.from_row(row)

    # Capture methods

    def insert_capture(
        self,
        source: CaptureSource | str,
        metadata: CaptureMetadata,
        raw_content: str = "",
        capture_id: str | None = None,
    ) -> CaptureRecord:
        """
        Stage a new capture.

        content_hash starts out null; it is bound later through
        update_content_hash once the content is known.

        Args:
            source: Capture source (voice or email)
            metadata: Capture metadata; native_id is required
            raw_content: Body text if already available (email)
            capture_id: Explicit id (default: new ULID)

        Returns:
            The stored CaptureRecord (status staged)

        Raises:
            InvalidCapture: If the input is malformed
            DuplicateNativeId: If (source, native_id) is already staged
        """
        try:
            try:
                source = CaptureSource(source)
            except ValueError:
                raise InvalidCapture(f"Unknown capture source: {source!r}") from None
            if not metadata.native_id or not str(metadata.native_id).strip():
                raise InvalidCapture("native_id is required")
            if not isinstance(raw_content, str):
                raise InvalidCapture("raw_content must be text")
            if capture_id is None:
                capture_id = generate_capture_id()
            elif not is_valid_capture_id(capture_id):
                raise InvalidCapture(f"Malformed capture id: {capture_id!r}")

            now = self._now()
            with self._transaction() as conn:
                existing = conn.execute(
                    """
                    SELECT id FROM captures
                    WHERE source = ? AND json_extract(meta_json, '$.native_id') = ?
                """,
                    (source.value, metadata.native_id),
                ).fetchone()
                if existing:
                    raise DuplicateNativeId(
                        f"Duplicate {source.value} native_id {metadata.native_id!r} "
                        f"(already staged as {existing['id']})",
                        existing_id=existing["id"],
                    )
                try:
                    conn.execute(
                        """
                        INSERT INTO captures
                        (id, source, raw_content, content_hash, status, meta_json,
                         created_at, updated_at)
                        VALUES (?, ?, ?, NULL, ?, ?, ?, ?)
                    """,
                        (
                            capture_id,
                            source.value,
                            raw_content,
                            CaptureStatus.STAGED.value,
                            metadata.to_json(),
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    raise InvalidCapture(f"Capture rejected by ledger: {e}") from e
                record = self._fetch_capture(conn, capture_id)
        except CaptureLedgerError as e:
            self._record_failure(e, ErrorOperation.STAGE)
            raise

        logger.info(f"Staged {source.value} capture {capture_id} ({metadata.native_id})")
        return record

    def get_capture(self, capture_id: str) -> CaptureRecord | None:
        """Get a capture by id."""
        with self._read() as conn:
            row = conn.execute("SELECT * FROM captures WHERE id = ?", (capture_id,)).fetchone()
            return CaptureRecord.from_row(row) if row else None

    def require_capture(self, capture_id: str) -> CaptureRecord:
        """Get a capture by id, raising CaptureNotFound if missing."""
        record = self.get_capture(capture_id)
        if record is None:
            error = CaptureNotFound(f"Capture not found: {capture_id}")
            self._record_failure(error, ErrorOperation.INTEGRITY)
            raise error
        return record

    def find_by_native_id(
        self, source: CaptureSource | str, native_id: str
    ) -> CaptureRecord | None:
        """Find a capture by its source-specific identity."""
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM captures
                WHERE source = ? AND json_extract(meta_json, '$.native_id') = ?
            """,
                (CaptureSource(source).value, native_id),
            ).fetchone()
            return CaptureRecord.from_row(row) if row else None

    def find_by_content_hash(self, content_hash: str) -> CaptureRecord | None:
        """Find the capture that owns a content hash."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM captures WHERE content_hash = ?", (content_hash,)
            ).fetchone()
            return CaptureRecord.from_row(row) if row else None

    def find_by_partial_fingerprint(self, fingerprint: str) -> CaptureRecord | None:
        """Find the oldest capture staged with an audio fingerprint."""
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM captures
                WHERE json_extract(meta_json, '$.partial_fingerprint') = ?
                ORDER BY created_at, rowid
                LIMIT 1
            """,
                (fingerprint,),
            ).fetchone()
            return CaptureRecord.from_row(row) if row else None

    def update_content_hash(
        self, capture_id: str, content_hash: str, content: str
    ) -> CaptureRecord:
        """
        Bind the content hash (and the content it was computed from).

        The hash moves from null to a value exactly once. Re-binding the
        identical hash is a no-op.

        Raises:
            CaptureNotFound: If the capture does not exist
            InvalidCapture: If the digest is not a SHA-256 hex string
            TerminalStateViolation: If the capture is already exported
            HashAlreadyBound: If a different hash is already bound
            UniqueHashViolation: If another capture owns this hash
        """
        try:
            if not is_valid_hash(content_hash):
                raise InvalidCapture(
                    f"Malformed content hash: {content_hash!r}", capture_id=capture_id
                )
            with self._transaction() as conn:
                record = self._fetch_capture(conn, capture_id)
                if record.content_hash == content_hash:
                    return record
                if record.is_terminal:
                    raise TerminalStateViolation(
                        f"Cannot bind hash on terminal capture {capture_id} "
                        f"({record.status.value})",
                        capture_id=capture_id,
                    )
                if record.content_hash is not None:
                    raise HashAlreadyBound(
                        f"Capture {capture_id} already bound to {record.content_hash}",
                        capture_id=capture_id,
                    )
                owner = conn.execute(
                    "SELECT id FROM captures WHERE content_hash = ? AND id != ?",
                    (content_hash, capture_id),
                ).fetchone()
                if owner:
                    raise UniqueHashViolation(
                        f"Content hash {content_hash} already owned by {owner['id']}",
                        capture_id=capture_id,
                        owner_id=owner["id"],
                    )
                conn.execute(
                    """
                    UPDATE captures
                    SET content_hash = ?, raw_content = ?, updated_at = ?
                    WHERE id = ?
                """,
                    (content_hash, content, self._now(), capture_id),
                )
                updated = self._fetch_capture(conn, capture_id)
        except CaptureLedgerError as e:
            self._record_failure(e, ErrorOperation.DEDUP)
            raise

        logger.debug(f"Bound content hash {content_hash[:12]}... to {capture_id}")
        return updated

    def transition_status(
        self,
        capture_id: str,
        new_status: CaptureStatus | str,
        metadata: CaptureMetadata | None = None,
    ) -> CaptureRecord:
        """
        Move a capture to a new status.

        Args:
            capture_id: Capture to update
            new_status: Target status (validated against the state machine)
            metadata: Replacement metadata written in the same transaction

        Exported statuses are only reachable through record_export, which
        writes the audit row in the same transaction.

        Raises:
            CaptureNotFound, InvalidTransition, TerminalStateViolation
        """
        new_status = CaptureStatus(new_status)
        try:
            with self._transaction() as conn:
                record = self._fetch_capture(conn, capture_id)
                assert_valid_transition(record.status, new_status, capture_id=capture_id)
                if new_status in TERMINAL_STATUSES:
                    raise InvalidTransition(
                        f"{new_status.value} requires an export audit row; use record_export",
                        capture_id=capture_id,
                    )
                meta_json = (metadata or record.metadata).to_json()
                conn.execute(
                    "UPDATE captures SET status = ?, meta_json = ?, updated_at = ? WHERE id = ?",
                    (new_status.value, meta_json, self._now(), capture_id),
                )
                updated = self._fetch_capture(conn, capture_id)
        except CaptureLedgerError as e:
            self._record_failure(e, ErrorOperation.INTEGRITY)
            raise

        logger.info(f"Capture {capture_id}: {record.status.value} -> {new_status.value}")
        return updated

    def update_metadata(self, capture_id: str, metadata: CaptureMetadata) -> CaptureRecord:
        """
        Replace the metadata of a non-terminal capture.

        Raises:
            CaptureNotFound, TerminalStateViolation
        """
        try:
            with self._transaction() as conn:
                record = self._fetch_capture(conn, capture_id)
                if record.is_terminal:
                    raise TerminalStateViolation(
                        f"Cannot update metadata of terminal capture {capture_id}",
                        capture_id=capture_id,
                    )
                if metadata.native_id != record.metadata.native_id:
                    raise InvalidCapture(
                        f"native_id of {capture_id} cannot change", capture_id=capture_id
                    )
                conn.execute(
                    "UPDATE captures SET meta_json = ?, updated_at = ? WHERE id = ?",
                    (metadata.to_json(), self._now(), capture_id),
                )
                return self._fetch_capture(conn, capture_id)
        except CaptureLedgerError as e:
            self._record_failure(e, ErrorOperation.INTEGRITY)
            raise

    def list_captures(
        self,
        status: CaptureStatus | str | None = None,
        source: CaptureSource | str | None = None,
        limit: int | None = None,
    ) -> list[CaptureRecord]:
        """List captures in creation order, optionally filtered."""
        query = "SELECT * FROM captures WHERE 1=1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(CaptureStatus(status).value)
        if source is not None:
            query += " AND source = ?"
            params.append(CaptureSource(source).value)
        query += " ORDER BY created_at, rowid"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
            return [CaptureRecord.from_row(row) for row in rows]

    def list_non_terminal(self) -> list[CaptureRecord]:
        """Captures still in flight, oldest first."""
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM captures
                WHERE status NOT IN ({placeholders})
                ORDER BY created_at, rowid
            """,
                _TERMINAL_VALUES,
            ).fetchall()
            return [CaptureRecord.from_row(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Number of captures per status (every status present, zero included)."""
        counts = {status.value: 0 for status in CaptureStatus}
        with self._read() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM captures GROUP BY status"):
                counts[row["status"]] = row["n"]
        return counts

    # Export audit methods

    def record_export(
        self,
        capture_id: str,
        vault_path: str,
        mode: ExportMode | str,
        hash_at_export: str | None,
        error_flag: bool = False,
        metadata: CaptureMetadata | None = None,
    ) -> ExportAuditRecord:
        """
        Record an export and move the capture to its terminal status.

        The audit insert and the status transition commit together: there
        is never an audit row without its terminal capture, nor a terminal
        capture without its audit row.

        Raises:
            CaptureNotFound, InvalidTransition, TerminalStateViolation
        """
        mode = ExportMode(mode)
        target = EXPORT_MODE_STATUS[mode]
        now = self._now()
        try:
            with self._transaction() as conn:
                record = self._fetch_capture(conn, capture_id)
                assert_valid_transition(record.status, target, capture_id=capture_id)
                cursor = conn.execute(
                    """
                    INSERT INTO export_audit
                    (capture_id, vault_path, hash_at_export, mode, error_flag, exported_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (capture_id, vault_path, hash_at_export, mode.value, int(error_flag), now),
                )
                conn.execute(
                    "UPDATE captures SET status = ?, meta_json = ?, updated_at = ? WHERE id = ?",
                    (target.value, (metadata or record.metadata).to_json(), now, capture_id),
                )
                row = conn.execute(
                    "SELECT * FROM export_audit WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        except CaptureLedgerError as e:
            self._record_failure(e, ErrorOperation.EXPORT)
            raise

        logger.info(f"Capture {capture_id}: {record.status.value} -> {target.value} ({vault_path})")
        return ExportAuditRecord.from_row(row)

    def get_export_audits(self, capture_id: str | None = None) -> list[ExportAuditRecord]:
        """Audit rows, oldest first, optionally for one capture."""
        with self._read() as conn:
            if capture_id is None:
                rows = conn.execute("SELECT * FROM export_audit ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM export_audit WHERE capture_id = ? ORDER BY id", (capture_id,)
                ).fetchall()
            return [ExportAuditRecord.from_row(row) for row in rows]

    def has_export_audit(self, capture_id: str) -> bool:
        """Check if a capture already has an audit row."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT 1 FROM export_audit WHERE capture_id = ? LIMIT 1", (capture_id,)
            ).fetchone()
            return row is not None

    # Error log methods

    def log_error(
        self,
        operation: ErrorOperation | str,
        error_class: str,
        message: str,
        capture_id: str | None = None,
        attempt_count: int = 0,
        escalation_action: str | None = None,
        dead_letter: bool = False,
    ) -> int:
        """
        Append an error log entry. Returns the entry id.

        A capture_id that does not exist in the ledger is stored as null
        (the id stays visible in the message).
        """
        operation = ErrorOperation(operation)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO error_log
                (capture_id, operation, error_class, message, attempt_count,
                 escalation_action, dead_letter, created_at)
                VALUES ((SELECT id FROM captures WHERE id = ?), ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    capture_id,
                    operation.value,
                    error_class,
                    message,
                    attempt_count,
                    escalation_action,
                    int(dead_letter),
                    self._now(),
                ),
            )
            return cursor.lastrowid or 0

    def list_errors(
        self,
        capture_id: str | None = None,
        operation: ErrorOperation | str | None = None,
        limit: int | None = None,
    ) -> list[ErrorLogRecord]:
        """Error log entries, oldest first, optionally filtered."""
        query = "SELECT * FROM error_log WHERE 1=1"
        params: list[Any] = []
        if capture_id is not None:
            query += " AND capture_id = ?"
            params.append(capture_id)
        if operation is not None:
            query += " AND operation = ?"
            params.append(ErrorOperation(operation).value)
        query += " ORDER BY id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
            return [ErrorLogRecord.from_row(row) for row in rows]

    # Sync state methods

    def get_sync_value(self, key: str) -> str | None:
        """Get a checkpoint value."""
        with self._read() as conn:
            row = conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set_sync_value(self, key: str, value: str) -> None:
        """Set a checkpoint value."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
            """,
                (key, value, self._now()),
            )

    def get_sync_json(self, key: str) -> Any:
        """Get a JSON checkpoint value (None if unset)."""
        raw = self.get_sync_value(key)
        return json.loads(raw) if raw is not None else None

    def set_sync_json(self, key: str, value: Any) -> None:
        """Set a JSON checkpoint value."""
        self.set_sync_value(key, json.dumps(value, sort_keys=True))

    # Retention and backup support

    def delete_terminal_captures_before(self, cutoff: datetime) -> list[str]:
        """
        Delete exported* captures created before the cutoff.

        Non-terminal captures are never touched. Audit rows follow their
        capture (ON DELETE CASCADE); error log rows survive with a null
        capture_id.

        Returns:
            Ids of the deleted captures
        """
        cutoff_ts = format_timestamp(cutoff)
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT id FROM captures
                WHERE status IN ({placeholders}) AND created_at < ?
                ORDER BY created_at, rowid
            """,
                (*_TERMINAL_VALUES, cutoff_ts),
            ).fetchall()
            ids = [row["id"] for row in rows]
            conn.executemany("DELETE FROM captures WHERE id = ?", [(i,) for i in ids])
        return ids

    def integrity_check(self) -> list[str]:
        """Run PRAGMA integrity_check; ["ok"] when healthy."""
        with self._read() as conn:
            return [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]

    def logical_digest(self) -> str:
        """SHA-256 over every ledger row in a stable order."""
        with self._read() as conn:
            return compute_logical_digest(conn)

    def backup_to(self, target: Path | str) -> Path:
        """
        Copy the live ledger to `target` with the SQLite online backup API.

        The copy includes committed WAL content and is consistent even while
        readers are active.
        """
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        source = self._get_connection()
        try:
            destination = sqlite3.connect(str(target))
            try:
                source.backup(destination)
                # Standalone copy: no -wal/-shm companions needed to open it read-only
                destination.execute("PRAGMA journal_mode = DELETE")
            finally:
                destination.close()
        finally:
            source.close()
        return target


def compute_logical_digest(conn: sqlite3.Connection) -> str:
    """
    Hash the content of the four ledger tables.

    Two databases with the same rows produce the same digest regardless of
    page layout, which makes this suitable for verifying a backup copy.
    """
    digest = hashlib.sha256()
    for table, order_by in LEDGER_TABLES.items():
        digest.update(f"[{table}]".encode())
        for row in conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}"):
            digest.update(json.dumps(list(row), default=str).encode("utf-8"))
            digest.update(b"\n")
    return digest.hexdigest()
