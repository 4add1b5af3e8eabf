"""Tests for the SQLite ledger store."""

import sqlite3
from datetime import timedelta

import pytest

from capture_ledger.errors import (
    CaptureNotFound,
    DuplicateNativeId,
    HashAlreadyBound,
    InvalidCapture,
    InvalidTransition,
    TerminalStateViolation,
    UniqueHashViolation,
)
from capture_ledger.schemas.capture import (
    CaptureMetadata,
    CaptureSource,
    CaptureStatus,
    ErrorOperation,
    ExportMode,
)
from capture_ledger.schemas.dedupe import compute_content_hash
from capture_ledger.schemas.ids import is_valid_capture_id
from capture_ledger.state_store import LedgerStore, compute_logical_digest, format_timestamp
from capture_ledger.state_store.migrations import get_all_migrations


def _bind(store, capture, text):
    return store.update_content_hash(capture.id, compute_content_hash(text), text)


class TestLedgerStore:
    """Schema and connection setup."""

    def test_init_creates_db(self, temp_db):
        LedgerStore(temp_db)
        assert temp_db.exists()

    def test_exactly_four_tables(self, store):
        conn = store._get_connection()
        try:
            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            ).fetchall()
        finally:
            conn.close()

        assert {t[0] for t in tables} == {"captures", "export_audit", "error_log", "sync_state"}

    def test_wal_journal_enabled(self, store):
        conn = store._get_connection()
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode.lower() == "wal"

    def test_schema_version_recorded(self, store):
        latest = max(m.version for m in get_all_migrations())
        assert store.schema_version() == latest
        assert store.get_sync_value("schema_version") == str(latest)

    def test_reopen_keeps_data_and_version(self, temp_db, store, make_email):
        capture = make_email()

        reopened = LedgerStore(temp_db)

        assert reopened.schema_version() == store.schema_version()
        assert reopened.get_capture(capture.id) is not None

    def test_migrations_are_ordered(self):
        versions = [m.version for m in get_all_migrations()]
        assert versions == sorted(versions)
        assert versions[0] == 1


class TestInsertCapture:
    """Staging and layer-1 dedup."""

    def test_insert_stages_with_null_hash(self, store, make_email, clock):
        capture = make_email()

        assert is_valid_capture_id(capture.id)
        assert capture.status == CaptureStatus.STAGED
        assert capture.content_hash is None
        assert capture.source == CaptureSource.EMAIL
        assert capture.created_at == format_timestamp(clock())

    def test_duplicate_native_id_rejected(self, store, make_email):
        """A second item with the same (source, native_id) creates no row."""
        first = make_email("msg-1")

        with pytest.raises(DuplicateNativeId) as exc_info:
            make_email("msg-1", body="different body")

        assert exc_info.value.existing_id == first.id
        assert len(store.list_captures()) == 1

        errors = store.list_errors(operation=ErrorOperation.STAGE)
        assert len(errors) == 1
        assert errors[0].error_class == "DuplicateNativeId"
        assert errors[0].capture_id == first.id

    def test_same_native_id_different_source_allowed(self, store):
        store.insert_capture(CaptureSource.EMAIL, CaptureMetadata(native_id="shared"))
        store.insert_capture(CaptureSource.VOICE, CaptureMetadata(native_id="shared"))

        assert len(store.list_captures()) == 2

    def test_unknown_source_rejected(self, store):
        with pytest.raises(InvalidCapture):
            store.insert_capture("fax", CaptureMetadata(native_id="x"))

        errors = store.list_errors()
        assert errors[-1].error_class == "InvalidCapture"
        assert errors[-1].capture_id is None

    def test_blank_native_id_rejected(self, store):
        with pytest.raises(InvalidCapture, match="native_id is required"):
            store.insert_capture(CaptureSource.EMAIL, CaptureMetadata(native_id="   "))
        assert store.list_captures() == []

    def test_malformed_explicit_id_rejected(self, store):
        with pytest.raises(InvalidCapture, match="Malformed capture id"):
            store.insert_capture(
                CaptureSource.EMAIL, CaptureMetadata(native_id="m"), capture_id="bad id"
            )

    def test_metadata_round_trip(self, store):
        metadata = CaptureMetadata(
            native_id="memo.m4a",
            source_path="/tmp/memo.m4a",
            partial_fingerprint="f" * 64,
            attachment_count=2,
            extra={"size_bytes": 1234},
        )
        capture = store.insert_capture(CaptureSource.VOICE, metadata)

        assert store.get_capture(capture.id).metadata == metadata

    def test_lookups(self, store):
        metadata = CaptureMetadata(native_id="memo.m4a", partial_fingerprint="a" * 64)
        capture = store.insert_capture(CaptureSource.VOICE, metadata)

        assert store.find_by_native_id(CaptureSource.VOICE, "memo.m4a").id == capture.id
        assert store.find_by_native_id(CaptureSource.EMAIL, "memo.m4a") is None
        assert store.find_by_partial_fingerprint("a" * 64).id == capture.id
        assert store.find_by_partial_fingerprint("b" * 64) is None

    def test_require_missing_capture(self, store):
        with pytest.raises(CaptureNotFound):
            store.require_capture("01HZX3Q5B8K2M9N4P6R7S8T0VW")


class TestContentHashBinding:
    """Late binding of content hashes."""

    def test_bind_hash(self, store, make_email):
        capture = make_email()
        bound = _bind(store, capture, "Hello World")

        assert bound.content_hash == compute_content_hash("Hello World")
        assert bound.raw_content == "Hello World"

    def test_rebinding_same_hash_is_idempotent(self, store, make_email):
        capture = make_email()
        first = _bind(store, capture, "Hello World")
        second = _bind(store, capture, "Hello World")

        assert second.content_hash == first.content_hash
        assert store.list_errors() == []

    def test_different_hash_rejected(self, store, make_email):
        capture = make_email()
        _bind(store, capture, "Hello World")

        with pytest.raises(HashAlreadyBound):
            _bind(store, capture, "Something else")

        assert store.get_capture(capture.id).content_hash == compute_content_hash("Hello World")

    def test_hash_owned_by_other_capture(self, store, make_email):
        """Binding a colliding hash fails and leaves the owner untouched."""
        owner = make_email("msg-1")
        other = make_email("msg-2")
        _bind(store, owner, "Hello World")
        before = store.get_capture(owner.id)

        with pytest.raises(UniqueHashViolation) as exc_info:
            _bind(store, other, "Hello World")

        assert exc_info.value.owner_id == owner.id
        assert store.get_capture(owner.id) == before
        assert store.get_capture(other.id).content_hash is None

        errors = store.list_errors(operation=ErrorOperation.DEDUP)
        assert errors[-1].error_class == "UniqueHashViolation"

    def test_malformed_hash_rejected(self, store, make_email):
        capture = make_email()
        with pytest.raises(InvalidCapture):
            store.update_content_hash(capture.id, "not-a-hash", "text")

    def test_bound_hashes_are_unique(self, store, make_email):
        for i in range(20):
            _bind(store, make_email(f"msg-{i}"), f"body {i}")

        hashes = [c.content_hash for c in store.list_captures()]
        assert len(set(hashes)) == len(hashes) == 20


class TestStatusTransitions:
    def test_valid_transition(self, store, make_email):
        capture = make_email()
        updated = store.transition_status(capture.id, CaptureStatus.TRANSCRIBED)

        assert updated.status == CaptureStatus.TRANSCRIBED
        assert updated.created_at == capture.created_at

    def test_invalid_transition_rejected(self, store, make_email):
        capture = make_email()

        with pytest.raises(InvalidTransition):
            store.transition_status(capture.id, CaptureStatus.EXPORTED)

        assert store.get_capture(capture.id).status == CaptureStatus.STAGED
        assert store.list_errors()[-1].error_class == "InvalidTransition"

    @pytest.mark.parametrize(
        "from_status,target",
        [
            (CaptureStatus.TRANSCRIBED, CaptureStatus.EXPORTED),
            (CaptureStatus.TRANSCRIBED, CaptureStatus.EXPORTED_DUPLICATE),
            (CaptureStatus.FAILED_TRANSCRIPTION, CaptureStatus.EXPORTED_PLACEHOLDER),
        ],
    )
    def test_exported_status_requires_audit_row(self, store, make_email, from_status, target):
        capture = make_email()
        store.transition_status(capture.id, from_status)

        with pytest.raises(InvalidTransition, match="record_export"):
            store.transition_status(capture.id, target)

        assert store.get_capture(capture.id).status == from_status
        assert store.get_export_audits(capture.id) == []
        assert store.list_errors()[-1].error_class == "InvalidTransition"

    def test_transition_with_metadata(self, store, make_email):
        capture = make_email()
        metadata = CaptureMetadata(native_id=capture.native_id, attempt_count=3)

        updated = store.transition_status(
            capture.id, CaptureStatus.FAILED_TRANSCRIPTION, metadata=metadata
        )

        assert updated.metadata.attempt_count == 3

    def test_terminal_capture_is_frozen(self, store, make_email):
        capture = make_email()
        _bind(store, capture, "Hello World")
        store.transition_status(capture.id, CaptureStatus.TRANSCRIBED)
        store.record_export(
            capture.id, "inbox/x.md", ExportMode.INITIAL, compute_content_hash("Hello World")
        )

        with pytest.raises(TerminalStateViolation):
            store.transition_status(capture.id, CaptureStatus.EXPORTED_DUPLICATE)
        with pytest.raises(TerminalStateViolation):
            store.update_metadata(capture.id, capture.metadata)
        with pytest.raises(TerminalStateViolation):
            _bind(store, capture, "Other content")

        assert store.get_capture(capture.id).status == CaptureStatus.EXPORTED

    def test_native_id_cannot_change(self, store, make_email):
        capture = make_email("msg-1")
        with pytest.raises(InvalidCapture):
            store.update_metadata(capture.id, CaptureMetadata(native_id="msg-2"))


class TestExportAudit:
    def _transcribed(self, store, make_email, native_id="msg-1", text="Hello World"):
        capture = make_email(native_id)
        _bind(store, capture, text)
        return store.transition_status(capture.id, CaptureStatus.TRANSCRIBED)

    def test_record_export_is_atomic_with_transition(self, store, make_email):
        capture = self._transcribed(store, make_email)

        audit = store.record_export(
            capture.id, f"inbox/{capture.id}.md", ExportMode.INITIAL, capture.content_hash
        )

        assert audit.mode == ExportMode.INITIAL
        assert audit.hash_at_export == capture.content_hash
        assert audit.error_flag is False
        assert store.get_capture(capture.id).status == CaptureStatus.EXPORTED
        assert store.has_export_audit(capture.id)

    def test_second_export_rejected(self, store, make_email):
        capture = self._transcribed(store, make_email)
        store.record_export(capture.id, "inbox/a.md", ExportMode.INITIAL, capture.content_hash)

        with pytest.raises(TerminalStateViolation):
            store.record_export(capture.id, "inbox/a.md", ExportMode.INITIAL, capture.content_hash)

        assert len(store.get_export_audits(capture.id)) == 1

    def test_invalid_mode_transition_writes_nothing(self, store, make_email):
        """Placeholder mode needs failed_transcription; no audit row is left behind."""
        capture = self._transcribed(store, make_email)

        with pytest.raises(InvalidTransition):
            store.record_export(capture.id, "inbox/a.md", ExportMode.PLACEHOLDER, None)

        assert store.get_export_audits(capture.id) == []
        assert store.get_capture(capture.id).status == CaptureStatus.TRANSCRIBED


class TestImmutabilityTriggers:
    """Database-level guards behind the store invariants."""

    def _exec(self, store, sql, params=()):
        conn = store._get_connection()
        try:
            conn.execute(sql, params)
        finally:
            conn.close()

    def test_bound_hash_cannot_be_rewritten(self, store, make_email):
        capture = make_email()
        _bind(store, capture, "Hello World")

        with pytest.raises(sqlite3.DatabaseError, match="immutable"):
            self._exec(
                store, "UPDATE captures SET content_hash = ? WHERE id = ?", ("0" * 64, capture.id)
            )

    def test_created_at_cannot_change(self, store, make_email):
        capture = make_email()
        with pytest.raises(sqlite3.DatabaseError, match="immutable"):
            self._exec(store, "UPDATE captures SET created_at = 'x' WHERE id = ?", (capture.id,))

    def test_terminal_rows_cannot_be_updated(self, store, make_email):
        capture = make_email()
        store.transition_status(capture.id, CaptureStatus.FAILED_TRANSCRIPTION)
        store.record_export(capture.id, "inbox/a.md", ExportMode.PLACEHOLDER, None, True)

        with pytest.raises(sqlite3.DatabaseError, match="terminal"):
            self._exec(store, "UPDATE captures SET status = 'staged' WHERE id = ?", (capture.id,))

    def test_export_audit_rows_are_immutable(self, store, make_email):
        capture = make_email()
        store.transition_status(capture.id, CaptureStatus.FAILED_TRANSCRIPTION)
        store.record_export(capture.id, "inbox/a.md", ExportMode.PLACEHOLDER, None, True)

        with pytest.raises(sqlite3.DatabaseError, match="immutable"):
            self._exec(store, "UPDATE export_audit SET vault_path = 'elsewhere.md'")

    def test_error_log_is_append_only(self, store):
        store.log_error(ErrorOperation.EXPORT, "VaultWriteError", "EACCES")

        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            self._exec(store, "UPDATE error_log SET message = 'edited'")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            self._exec(store, "DELETE FROM error_log")

        assert store.list_errors()[0].message == "EACCES"


class TestErrorLog:
    def test_log_error_fields(self, store, make_email, clock):
        capture = make_email()
        store.log_error(
            ErrorOperation.TRANSCRIBE,
            "TranscriptionTimeout",
            "timed out",
            capture_id=capture.id,
            attempt_count=2,
            escalation_action="retry_later",
        )

        entry = store.list_errors(capture_id=capture.id)[0]
        assert entry.operation == ErrorOperation.TRANSCRIBE
        assert entry.attempt_count == 2
        assert entry.escalation_action == "retry_later"
        assert entry.dead_letter is False
        assert entry.created_at == format_timestamp(clock())

    def test_unknown_capture_id_stored_as_null(self, store):
        store.log_error(ErrorOperation.INTEGRITY, "CaptureNotFound", "gone", capture_id="missing")
        assert store.list_errors()[0].capture_id is None

    def test_filters_and_limit(self, store):
        for i in range(5):
            store.log_error(ErrorOperation.BACKUP, "BackupVerificationFailed", f"try {i}")
        store.log_error(ErrorOperation.EXPORT, "VaultWriteError", "EACCES")

        assert len(store.list_errors(operation="backup")) == 5
        assert [e.message for e in store.list_errors(limit=2)] == ["try 0", "try 1"]


class TestSyncState:
    def test_value_round_trip(self, store):
        assert store.get_sync_value("voice_last_poll") is None
        store.set_sync_value("voice_last_poll", "1700000000.5")
        store.set_sync_value("voice_last_poll", "1700000001.5")

        assert store.get_sync_value("voice_last_poll") == "1700000001.5"

    def test_json_round_trip(self, store):
        store.set_sync_json("email_cursor", {"uid": 42, "folder": "INBOX"})
        assert store.get_sync_json("email_cursor") == {"uid": 42, "folder": "INBOX"}


class TestRetentionSupport:
    def test_delete_only_old_terminal_captures(self, store, make_email, clock):
        old_exported = make_email("old-exported")
        store.transition_status(old_exported.id, CaptureStatus.FAILED_TRANSCRIPTION)
        store.record_export(old_exported.id, "inbox/a.md", ExportMode.PLACEHOLDER, None, True)
        store.log_error(ErrorOperation.TRANSCRIBE, "TranscriptionOom", "oom", old_exported.id)
        old_staged = make_email("old-staged")

        clock.advance(days=100)
        recent = make_email("recent")
        store.transition_status(recent.id, CaptureStatus.FAILED_TRANSCRIPTION)
        store.record_export(recent.id, "inbox/b.md", ExportMode.PLACEHOLDER, None, True)

        deleted = store.delete_terminal_captures_before(clock() - timedelta(days=90))

        assert deleted == [old_exported.id]
        assert store.get_capture(old_exported.id) is None
        assert store.get_capture(old_staged.id) is not None
        assert store.get_capture(recent.id) is not None
        # Audit rows cascade, error log survives with a null capture id
        assert store.get_export_audits(old_exported.id) == []
        assert [e.capture_id for e in store.list_errors()] == [None]

    def test_list_non_terminal_in_creation_order(self, store, make_email, clock):
        first = make_email("m1")
        clock.advance(seconds=1)
        second = make_email("m2")
        clock.advance(seconds=1)
        done = make_email("m3")
        store.transition_status(done.id, CaptureStatus.FAILED_TRANSCRIPTION)
        store.record_export(done.id, "inbox/c.md", ExportMode.PLACEHOLDER, None, True)

        assert [c.id for c in store.list_non_terminal()] == [first.id, second.id]

    def test_count_by_status(self, store, make_email):
        make_email("m1")
        capture = make_email("m2")
        store.transition_status(capture.id, CaptureStatus.TRANSCRIBED)

        counts = store.count_by_status()
        assert counts["staged"] == 1
        assert counts["transcribed"] == 1
        assert counts["exported"] == 0


class TestBackupSupport:
    def test_integrity_check_ok(self, store):
        assert store.integrity_check() == ["ok"]

    def test_logical_digest_tracks_content(self, store, make_email):
        before = store.logical_digest()
        assert store.logical_digest() == before

        make_email()
        assert store.logical_digest() != before

    def test_backup_matches_live_ledger(self, store, make_email, tmp_path):
        make_email("m1")
        make_email("m2")

        target = store.backup_to(tmp_path / "backups" / "copy.sqlite")

        conn = sqlite3.connect(f"file:{target}?mode=ro", uri=True)
        try:
            assert compute_logical_digest(conn) == store.logical_digest()
        finally:
            conn.close()
