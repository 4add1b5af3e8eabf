"""
Ledger Store (SQLite-based).

Crash-safe persistent record of every capture:
- Captures and their lifecycle status
- Export audit trail
- Error log
- Sync cursors

Enforces uniqueness on (source, native_id) and on bound content hashes.
"""

from .sqlite_store import (
    LEDGER_TABLES,
    TIMESTAMP_FORMAT,
    LedgerStore,
    compute_logical_digest,
    format_timestamp,
)

__all__ = [
    "LEDGER_TABLES",
    "TIMESTAMP_FORMAT",
    "LedgerStore",
    "compute_logical_digest",
    "format_timestamp",
]
