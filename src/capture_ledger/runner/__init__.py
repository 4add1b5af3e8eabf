"""
CLI runner module.

Provides commands:
- init: Write a default config and create the ledger
- ingest: Stage new voice memos
- process: Drive pending captures to the vault
- reconcile: Startup crash recovery
- backup / sweep: Verified snapshots and retention
"""

from .main import build_pipeline, create_cli, main

__all__ = [
    "build_pipeline",
    "create_cli",
    "main",
]
