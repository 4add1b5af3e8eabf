"""
Capture Ledger

Crash-safe staging ledger for a personal capture pipeline:
voice memos and emails are staged in SQLite, deduplicated by content hash,
and exported exactly once as Markdown notes into a user-owned vault.
"""

__version__ = "0.1.0"
