"""
CLI main entry point.
"""

import argparse
import logging
import signal
import sys
from pathlib import Path

from ..adapters import VoiceMemoFolderSource, WhisperClient
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import CaptureLedgerError, ExporterHalted, VaultFatalError
from ..schemas.capture import TERMINAL_STATUSES, CaptureStatus
from ..services import (
    AtomicExporter,
    CapturePipeline,
    DeduplicationService,
    RecoveryReconciler,
    RetentionService,
)
from ..state_store import LedgerStore
from ..vault import VaultWriter

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="capture-ledger",
        description="Stage voice memos and email captures and export them to a notes vault",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser(
        "init", help="Write a default config file and create the ledger"
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    subparsers.add_parser("status", help="Show ledger status and backup health")

    subparsers.add_parser("ingest", help="Stage new recordings from the voice memo folder")

    # process command
    process_parser = subparsers.add_parser(
        "process", help="Ingest, then drive pending captures to the vault"
    )
    process_parser.add_argument(
        "--no-ingest",
        action="store_true",
        help="Only process captures already in the ledger",
    )

    subparsers.add_parser(
        "reconcile", help="Recover captures left in flight by a crash or restart"
    )

    # export command
    export_parser = subparsers.add_parser("export", help="Export a single capture")
    export_parser.add_argument("--id", dest="capture_id", required=True, help="Capture id")

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Snapshot and verify the ledger")
    backup_parser.add_argument(
        "--no-prune",
        action="store_true",
        help="Keep all existing snapshots",
    )

    subparsers.add_parser(
        "sweep", help="Delete exported captures past the retention window"
    )

    # errors command
    errors_parser = subparsers.add_parser("errors", help="Show the error log")
    errors_parser.add_argument("--capture-id", type=str, help="Only errors for this capture")
    errors_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum entries to show (default: 50)",
    )

    # release command
    release_parser = subparsers.add_parser(
        "release", help="Clear a quarantine or halt flag after manual review"
    )
    release_parser.add_argument("--id", dest="capture_id", required=True, help="Capture id")

    return parser


def open_store(config: Config) -> LedgerStore:
    return LedgerStore(config.ledger_db_path, busy_timeout_ms=config.busy_timeout_ms)


def build_pipeline(config: Config, store: LedgerStore) -> CapturePipeline:
    """Wire the processing pipeline from configuration."""
    vault = VaultWriter(
        config.vault.root,
        inbox_dir=config.vault.inbox_dir,
        scratch_dir=config.vault.scratch_dir,
    )
    transcriber = None
    if config.transcription.enabled:
        transcriber = WhisperClient(
            base_url=config.transcription.base_url,
            timeout=config.transcription.timeout_seconds,
            max_retries=config.transcription.max_retries,
        )

    pipeline = CapturePipeline(
        store,
        DeduplicationService(store, vault),
        AtomicExporter(store, vault),
        transcriber=transcriber,
        max_transcription_attempts=config.transcription.max_attempts,
    )
    if config.voice.folder is not None:
        pipeline.register_source(
            VoiceMemoFolderSource(
                config.voice.folder,
                store,
                extensions=config.voice.extensions,
                fingerprint_bytes=config.voice.fingerprint_bytes,
            )
        )
    return pipeline


def build_retention(config: Config, store: LedgerStore) -> RetentionService:
    return RetentionService(
        store,
        config.retention.backup_dir,
        window_days=config.retention.window_days,
        keep_snapshots=config.retention.keep_snapshots,
    )


def cmd_init(config_path: Path, force: bool = False) -> int:
    """Write a default config and create the ledger."""
    if config_path.exists() and not force:
        print(f"⚠️  Config already exists: {config_path} (use --force to overwrite)")
    else:
        create_default_config(config_path)
        print(f"✓ Wrote default config: {config_path}")

    config = load_config(config_path)
    store = open_store(config)
    print(f"✓ Ledger ready: {store.db_path} (schema v{store.schema_version()})")
    return 0


def cmd_status(config: Config) -> int:
    """Show ledger status."""
    store = open_store(config)
    counts = store.count_by_status()
    retention = build_retention(config, store)
    verification = retention.verification_state()

    print("\n📊 Ledger Status")
    print("=" * 40)
    for status in CaptureStatus:
        marker = "  (terminal)" if status in TERMINAL_STATUSES else ""
        print(f"  {status.value:<22} {counts.get(status.value, 0)}{marker}")
    print(f"  {'export audits':<22} {len(store.get_export_audits())}")
    print(f"  {'errors logged':<22} {len(store.list_errors())}")
    print()

    print("💾 Backups")
    print("=" * 40)
    if verification is None:
        print("  No snapshot taken yet")
    else:
        print(f"  Last snapshot:  {verification.get('snapshot')}")
        print(f"  Verified:       {'yes' if verification.get('verified') else 'no'}")
        print(f"  Status:         {verification.get('status')}")
        print(f"  Checked at:     {verification.get('checked_at')}")
    print()

    return 0


def cmd_ingest(config: Config) -> int:
    """Stage new items from the configured voice folder."""
    if config.voice.folder is None:
        print("⚠️  No voice folder configured (voice.folder / CAPTURE_VOICE_FOLDER)")
        return 0

    store = open_store(config)
    pipeline = build_pipeline(config, store)

    print(f"🔍 Scanning {config.voice.folder} ...")
    total_staged = 0
    for source in pipeline.sources.values():
        result = pipeline.ingest(source)
        total_staged += len(result.staged)
        print(
            f"  {source.source.value}: {result.observed} observed, "
            f"{len(result.staged)} staged, {result.duplicates} duplicates, "
            f"{result.rejected} rejected"
        )

    print(f"\n✓ Staged {total_staged} new capture(s)")
    return 0


def cmd_process(config: Config, ingest: bool = True) -> int:
    """Reconcile, ingest, then process every pending capture once."""
    store = open_store(config)
    pipeline = build_pipeline(config, store)
    reconciler = RecoveryReconciler(store, pipeline, pipeline.exporter.vault)

    recovery = reconciler.reconcile_on_startup()
    if recovery.halted:
        print("\n⚠️  Errors encountered:")
        for error in recovery.errors:
            print(f"   - {error}")
        print("\n❌ Recovery halted: fix the vault and run again")
        return 1

    def _handle_signal(signum, frame):
        print("\n⏹  Stopping after the current capture...")
        pipeline.request_shutdown()

    previous = signal.signal(signal.SIGINT, _handle_signal)
    try:
        if ingest:
            for source in pipeline.sources.values():
                pipeline.ingest(source)
        summary = pipeline.process_pending(skip=recovery.attempted)
    finally:
        signal.signal(signal.SIGINT, previous)

    outcomes = dict(recovery.outcomes)
    for outcome, count in summary.outcomes.items():
        outcomes[outcome] = outcomes.get(outcome, 0) + count
    errors = recovery.errors + summary.errors

    print("\n📊 Processing Results")
    print("=" * 40)
    print(f"  Recovered: {recovery.resumed}")
    print(f"  Quarantined: {len(recovery.quarantined)}")
    print(f"  Stale scratch files: {recovery.stale_scratch_removed}")
    print(f"  Processed: {summary.processed}")
    for outcome, count in sorted(outcomes.items()):
        print(f"  {outcome:<24} {count}")

    if errors:
        print("\n⚠️  Errors encountered:")
        for error in errors:
            print(f"   - {error}")

    if summary.halted:
        print("\n❌ Exports halted: fix the vault and run again")
        return 1
    if summary.interrupted:
        print("\n⏹  Interrupted; remaining captures will be picked up next run")
    return 0 if not errors else 1


def cmd_reconcile(config: Config) -> int:
    """Recover in-flight captures."""
    store = open_store(config)
    pipeline = build_pipeline(config, store)
    reconciler = RecoveryReconciler(store, pipeline, pipeline.exporter.vault)

    print("🔄 Reconciling in-flight captures...")
    result = reconciler.reconcile_on_startup()

    print()
    print("📊 Recovery Results")
    print("=" * 40)
    print(f"  In flight:           {result.found}")
    print(f"  Resumed:             {result.resumed}")
    print(f"  Quarantined:         {len(result.quarantined)}")
    print(f"  Blocked (review):    {len(result.blocked)}")
    print(f"  Stale scratch files: {result.stale_scratch_removed}")
    for outcome, count in sorted(result.outcomes.items()):
        print(f"    {outcome:<22} {count}")

    for capture_id in result.quarantined:
        print(f"  🚧 quarantined {capture_id}")

    if result.errors:
        print("\n⚠️  Errors encountered:")
        for error in result.errors:
            print(f"   - {error}")

    if result.success:
        print("\n✓ Recovery completed")
        return 0
    print("\n❌ Recovery incomplete")
    return 1


def cmd_export(config: Config, capture_id: str) -> int:
    """Process a single capture."""
    store = open_store(config)
    pipeline = build_pipeline(config, store)

    try:
        outcome = pipeline.process_capture(capture_id)
    except (VaultFatalError, ExporterHalted) as e:
        print(f"❌ Export halted: {e}")
        return 1
    except CaptureLedgerError as e:
        print(f"❌ {e.error_class}: {e}")
        return 1

    print(f"✓ {capture_id}: {outcome.value}")
    return 0


def cmd_backup(config: Config, prune: bool = True) -> int:
    """Snapshot and verify the ledger."""
    store = open_store(config)
    retention = build_retention(config, store)

    print(f"💾 Snapshotting ledger to {retention.backup_dir} ...")
    result = retention.create_snapshot()
    if result.verified:
        print(f"✓ Snapshot verified: {result.path}")
    else:
        print(f"❌ Verification failed ({result.status.value}): {result.error}")

    if prune:
        removed = retention.prune_snapshots()
        if removed:
            print(f"  🗑  Pruned {len(removed)} old snapshot(s)")

    return 0 if result.verified else 1


def cmd_sweep(config: Config) -> int:
    """Run the retention sweep."""
    store = open_store(config)
    retention = build_retention(config, store)

    result = retention.sweep_retention()
    if result.skipped:
        print(f"⚠️  Sweep skipped: {result.reason}")
        return 1

    print(f"✓ Removed {len(result.deleted)} capture(s) older than {result.cutoff}")
    return 0


def cmd_errors(config: Config, capture_id: str | None = None, limit: int = 50) -> int:
    """Print the error log."""
    store = open_store(config)
    entries = store.list_errors(capture_id=capture_id)[-limit:] if limit > 0 else []

    if not entries:
        print("✓ No errors logged")
        return 0

    for entry in entries:
        flags = " [dead-letter]" if entry.dead_letter else ""
        action = f" -> {entry.escalation_action}" if entry.escalation_action else ""
        print(
            f"  {entry.created_at}  {entry.operation.value:<10} {entry.error_class}"
            f"{action}{flags}"
        )
        print(f"      {entry.capture_id or '-'}: {entry.message}")

    print(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return 0


def cmd_release(config: Config, capture_id: str) -> int:
    """Clear a quarantine or halt flag."""
    store = open_store(config)
    pipeline = build_pipeline(config, store)

    try:
        capture = pipeline.release(capture_id)
    except CaptureLedgerError as e:
        print(f"❌ {e.error_class}: {e}")
        return 1

    print(f"✓ Released {capture.id} ({capture.status.value})")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init":
        return cmd_init(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
        problems = config.validate()
        if problems:
            raise ConfigValidationError("; ".join(problems))
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "ingest":
        return cmd_ingest(config)
    elif parsed.command == "process":
        return cmd_process(config, ingest=not parsed.no_ingest)
    elif parsed.command == "reconcile":
        return cmd_reconcile(config)
    elif parsed.command == "export":
        return cmd_export(config, parsed.capture_id)
    elif parsed.command == "backup":
        return cmd_backup(config, prune=not parsed.no_prune)
    elif parsed.command == "sweep":
        return cmd_sweep(config)
    elif parsed.command == "errors":
        return cmd_errors(config, parsed.capture_id, parsed.limit)
    elif parsed.command == "release":
        return cmd_release(config, parsed.capture_id)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
