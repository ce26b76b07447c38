"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..runtime import LedgerRuntime

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
        prog="paygate-ledger",
        description="Ledger consistency, backup and recovery for the payment gateway",
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

    # status command
    status_parser = subparsers.add_parser("status", help="Check document health")
    status_parser.add_argument(
        "--force",
        action="store_true",
        help="Bypass the health cache",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the raw status as JSON",
    )

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Back up all document files")
    backup_parser.add_argument(
        "--reason",
        type=str,
        default="manual",
        help="Backup reason (default: manual; cron jobs use 'scheduled')",
    )
    backup_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Apply the retention policy afterwards",
    )

    # list command
    list_parser = subparsers.add_parser("list", help="List available backups")
    list_parser.add_argument(
        "--verify",
        action="store_true",
        help="Validate each backup's structure",
    )

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Validate a single backup")
    verify_parser.add_argument("filename", help="Backup filename")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore a file from a backup")
    restore_parser.add_argument(
        "target",
        help="Backup filename, or a document name with --auto",
    )
    restore_parser.add_argument(
        "--auto",
        action="store_true",
        help="Restore the newest valid backup of the named document",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Restore even if the backup fails validation",
    )
    restore_parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Skip the pre-restore backup of the live file",
    )

    # cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Apply the backup retention policy")
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Show what would be deleted without deleting",
    )

    # repair command
    subparsers.add_parser("repair", help="Repair broken document files")

    # startup command
    subparsers.add_parser("startup", help="Run startup validation and bootstrap the store")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Synchronise store and documents")
    sync_parser.add_argument(
        "direction",
        choices=["ingest", "project"],
        help="ingest: documents -> store; project: store -> documents",
    )

    # watch command
    subparsers.add_parser("watch", help="Run the document watcher until interrupted")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def _runtime(config: Config) -> LedgerRuntime:
    return LedgerRuntime.from_config(config, watch=False, schedule=False)


def cmd_status(config: Config, force: bool = False, as_json: bool = False) -> int:
    """Show document health."""
    runtime = _runtime(config)
    status = runtime.operations.get_database_status(force=force)

    if as_json:
        print(json.dumps(status, indent=2))
        return 0 if status["isHealthy"] else 1

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Healthy:            {'yes' if status['isHealthy'] else 'NO'}")
    print(f"  Recovery possible:  {'yes' if status['recoveryPossible'] else 'NO'}")
    print(f"  Last checked:       {status['lastChecked']}")
    for table, count in runtime.store.table_counts().items():
        print(f"  {table + ':':<24}{count}")
    if status["issues"]:
        print("\n⚠️  Issues:")
        for issue in status["issues"]:
            print(f"   - {issue}")
    print()
    return 0 if status["isHealthy"] else 1


def cmd_backup(config: Config, reason: str, cleanup: bool) -> int:
    """Back up every document file."""
    runtime = _runtime(config)
    print(f"💾 Creating {reason} backup...")
    result = runtime.operations.create_backup(reason)

    if "error" in result:
        print(f"❌ {result['error']}")
        return 1
    for name, path in result["backups"].items():
        print(f"  ✓ {name} → {path}")
    for name in result["skipped"]:
        print(f"  ⏭ {name} (missing)")
    for name, error in result["errors"].items():
        print(f"  ❌ {name}: {error}")

    if cleanup:
        cleanup_result = runtime.operations.run_cleanup()
        print(f"🧹 Cleanup: {cleanup_result.get('deleted', 0)} deleted")
        if not cleanup_result["success"]:
            return 1

    return 0 if result["success"] else 1


def cmd_list(config: Config, verify: bool) -> int:
    """List backups, newest first."""
    runtime = _runtime(config)
    result = runtime.operations.list_backups(verify=verify)
    if not result["success"]:
        print(f"❌ {result['error']}")
        return 1

    backups = result["backups"]
    if not backups:
        print("No backups found")
        return 0

    for backup in backups:
        marker = ""
        if backup["verified"] is True:
            marker = " ✓"
        elif backup["verified"] is False:
            marker = f" ❌ {backup['verifyError']}"
        print(f"  [{backup['kind']}] {backup['filename']} ({backup['size']} B){marker}")
    print(f"\n✓ {len(backups)} backup(s)")
    return 0


def cmd_verify(config: Config, filename: str) -> int:
    runtime = _runtime(config)
    result = runtime.operations.verify_backup(filename)
    if result["valid"]:
        print(f"✓ {filename} is a valid backup of {result['sourceName']}")
        return 0
    print(f"❌ {filename}: {result['detail']}")
    return 1


def cmd_restore(
    config: Config, target: str, auto: bool = False, force: bool = False, no_backup: bool = False
) -> int:
    """Restore a document from a backup."""
    runtime = _runtime(config)
    if auto:
        print(f"♻️  Restoring newest valid backup of {target}...")
        result = runtime.operations.restore_latest(target, pre_restore=not no_backup)
    else:
        print(f"♻️  Restoring from {target}...")
        result = runtime.operations.restore_backup(
            target, force=force, pre_restore=not no_backup
        )

    if not result["success"]:
        print(f"❌ Restore failed: {result.get('error')}")
        return 1
    if result.get("preRestoreBackup"):
        print(f"  💾 Previous version saved to {result['preRestoreBackup']}")
    print(f"✓ Restored from {result['filename']}")
    return 0


def cmd_cleanup(config: Config, dry_run: bool | None) -> int:
    runtime = _runtime(config)
    result = runtime.operations.run_cleanup(dry_run=dry_run)
    if "error" in result:
        print(f"❌ Cleanup failed: {result['error']}")
        return 1

    prefix = "[DRY RUN] Would delete" if result["dryRun"] else "Deleted"
    for path in result["deletedFiles"]:
        print(f"  🗑  {prefix} {path}")
    print(f"\n✓ {result['deleted']} deleted, {result['kept']} kept")
    return 0 if result["success"] else 1


def cmd_repair(config: Config) -> int:
    runtime = _runtime(config)
    if runtime.store.is_empty():
        # Seed the store first so the re-projection does not wipe the documents
        runtime.engine.ingest_documents_to_store()
    result = runtime.operations.repair()
    if "error" in result:
        print(f"❌ Repair failed: {result['error']}")
        return 1
    for fixed in result["fixedIssues"]:
        print(f"  🔧 {fixed}")
    for error in result["criticalErrors"]:
        print(f"  ❌ {error}")
    if not result["fixedIssues"] and not result["criticalErrors"]:
        print("✓ Nothing to repair")
    return 0 if result["success"] else 1


def cmd_startup(config: Config) -> int:
    """Run startup validation once and exit."""
    runtime = _runtime(config)
    report = runtime.start()
    runtime.shutdown()

    for issue in report.issues:
        print(f"  ⚠ {issue}")
    for fixed in report.fixed_issues:
        print(f"  🔧 {fixed}")
    for error in report.critical_errors:
        print(f"  ❌ {error}")
    if report.success:
        print("✓ Startup validation passed")
        return 0
    print("❌ Startup validation failed")
    return 1


def cmd_sync(config: Config, direction: str) -> int:
    runtime = _runtime(config)
    if direction == "ingest":
        report = runtime.engine.ingest_documents_to_store()
    else:
        report = runtime.engine.project_store_to_documents()

    print(f"🔄 {report.summary()}")
    for name, error in report.errors.items():
        print(f"  ❌ {name}: {error}")
    return 0 if report.success else 1


def cmd_watch(config: Config) -> int:
    """Run startup, then watch documents until Ctrl+C."""
    runtime = LedgerRuntime.from_config(config, watch=True)
    report = runtime.start()
    if not report.success:
        print("⚠️  Startup validation reported critical errors")
    print("👀 Watching document files (Ctrl+C to stop)...")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        runtime.shutdown()
    print("\n✓ Watcher stopped")
    return 0


def cmd_init_config(config_path: Path) -> int:
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ Config: {error}")
        return 1

    # Route to command
    if parsed.command == "status":
        return cmd_status(config, parsed.force, parsed.json)
    elif parsed.command == "backup":
        return cmd_backup(config, parsed.reason, parsed.cleanup)
    elif parsed.command == "list":
        return cmd_list(config, parsed.verify)
    elif parsed.command == "verify":
        return cmd_verify(config, parsed.filename)
    elif parsed.command == "restore":
        return cmd_restore(config, parsed.target, parsed.auto, parsed.force, parsed.no_backup)
    elif parsed.command == "cleanup":
        return cmd_cleanup(config, parsed.dry_run)
    elif parsed.command == "repair":
        return cmd_repair(config)
    elif parsed.command == "startup":
        return cmd_startup(config)
    elif parsed.command == "sync":
        return cmd_sync(config, parsed.direction)
    elif parsed.command == "watch":
        return cmd_watch(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
