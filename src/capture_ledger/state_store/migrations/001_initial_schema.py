"""
Migration 001: Initial ledger schema.

Creates the four ledger tables:
- captures: one row per observed item, with its status and content hash
- export_audit: one row per export that reached the vault
- error_log: append-only diagnostics
- sync_state: collaborator checkpoints and ledger bookkeeping
"""

import sqlite3

VERSION = 1
NAME = "initial_schema"

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS captures (
        id TEXT PRIMARY KEY,
        source TEXT NOT NULL CHECK (source IN ('voice', 'email')),
        raw_content TEXT NOT NULL DEFAULT '',
        content_hash TEXT,
        status TEXT NOT NULL CHECK (status IN (
            'staged', 'transcribed', 'failed_transcription',
            'exported', 'exported_duplicate', 'exported_placeholder'
        )),
        meta_json TEXT NOT NULL CHECK (json_valid(meta_json)),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # Content hash is unique among bound (non-null) values
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_captures_content_hash
        ON captures(content_hash) WHERE content_hash IS NOT NULL
    """,
    # Layer 1 dedup: (source, native_id)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_captures_native_id
        ON captures(source, json_extract(meta_json, '$.native_id'))
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_captures_fingerprint
        ON captures(json_extract(meta_json, '$.partial_fingerprint'))
    """,
    "CREATE INDEX IF NOT EXISTS idx_captures_status ON captures(status)",
    "CREATE INDEX IF NOT EXISTS idx_captures_created_at ON captures(created_at)",
    """
    CREATE TABLE IF NOT EXISTS export_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        capture_id TEXT NOT NULL REFERENCES captures(id) ON DELETE CASCADE,
        vault_path TEXT NOT NULL,
        hash_at_export TEXT,
        mode TEXT NOT NULL CHECK (mode IN ('initial', 'duplicate', 'placeholder')),
        error_flag INTEGER NOT NULL DEFAULT 0 CHECK (error_flag IN (0, 1)),
        exported_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_export_audit_capture ON export_audit(capture_id)",
    # At most one non-placeholder export per capture
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_export_audit_single_export
        ON export_audit(capture_id) WHERE mode != 'placeholder'
    """,
    """
    CREATE TABLE IF NOT EXISTS error_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        capture_id TEXT REFERENCES captures(id) ON DELETE SET NULL,
        operation TEXT NOT NULL CHECK (operation IN (
            'stage', 'transcribe', 'dedup', 'export',
            'recovery', 'backup', 'retention', 'integrity'
        )),
        error_class TEXT NOT NULL,
        message TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        escalation_action TEXT,
        dead_letter INTEGER NOT NULL DEFAULT 0 CHECK (dead_letter IN (0, 1)),
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_error_log_capture ON error_log(capture_id)",
    "CREATE INDEX IF NOT EXISTS idx_error_log_created_at ON error_log(created_at)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the ledger tables and indexes."""
    for statement in STATEMENTS:
        conn.execute(statement)
