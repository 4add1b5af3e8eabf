"""
Database migrations module.

This module provides versioned, ordered migrations for the ledger.
Migrations are applied in order and tracked in PRAGMA user_version.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
