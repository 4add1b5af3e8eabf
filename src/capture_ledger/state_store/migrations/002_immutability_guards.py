"""
Migration 002: Immutability guards.

Triggers that back the store's invariants at the database level, so a
stray UPDATE from a maintenance script cannot break them either:
- a bound content_hash never changes
- created_at never changes
- captures in an exported* status are frozen (deletion by retention is allowed)
- export_audit rows are never updated
- error_log rows are never updated or deleted, except for the ON DELETE
  SET NULL of capture_id when retention removes the capture
"""

import sqlite3

VERSION = 2
NAME = "immutability_guards"

STATEMENTS = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_captures_hash_immutable
    BEFORE UPDATE OF content_hash ON captures
    WHEN OLD.content_hash IS NOT NULL AND NEW.content_hash IS NOT OLD.content_hash
    BEGIN
        SELECT RAISE(ABORT, 'content_hash is immutable once bound');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_captures_created_at_immutable
    BEFORE UPDATE OF created_at ON captures
    WHEN NEW.created_at IS NOT OLD.created_at
    BEGIN
        SELECT RAISE(ABORT, 'created_at is immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_captures_terminal_immutable
    BEFORE UPDATE ON captures
    WHEN OLD.status IN ('exported', 'exported_duplicate', 'exported_placeholder')
    BEGIN
        SELECT RAISE(ABORT, 'captures in a terminal state are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_export_audit_no_update
    BEFORE UPDATE ON export_audit
    BEGIN
        SELECT RAISE(ABORT, 'export_audit rows are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_error_log_no_update
    BEFORE UPDATE ON error_log
    WHEN NOT (
        OLD.capture_id IS NOT NULL
        AND NEW.capture_id IS NULL
        AND NEW.id IS OLD.id
        AND NEW.operation IS OLD.operation
        AND NEW.error_class IS OLD.error_class
        AND NEW.message IS OLD.message
        AND NEW.attempt_count IS OLD.attempt_count
        AND NEW.escalation_action IS OLD.escalation_action
        AND NEW.dead_letter IS OLD.dead_letter
        AND NEW.created_at IS OLD.created_at
    )
    BEGIN
        SELECT RAISE(ABORT, 'error_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_error_log_no_delete
    BEFORE DELETE ON error_log
    BEGIN
        SELECT RAISE(ABORT, 'error_log is append-only');
    END
    """,
]


def upgrade(conn: sqlite3.Connection) -> None:
    """Install the immutability triggers."""
    for statement in STATEMENTS:
        conn.execute(statement)
