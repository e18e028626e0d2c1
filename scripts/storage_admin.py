#!/usr/bin/env python3
"""Operator commands for the catalog database storage quota.

Usage:
    python scripts/storage_admin.py info
    python scripts/storage_admin.py check
    python scripts/storage_admin.py cleanup --keep-products 100 --truncate-descriptions
    python scripts/storage_admin.py backup --tables categories producers units
    python scripts/storage_admin.py restore backups/backup_2024-01-01T00-00-00-000000Z.json
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

# Add project root to path
script_dir = Path(__file__).parent
project_root = script_dir.parent
sys.path.insert(0, str(project_root))

from catalog_import.config import settings, storage_settings, configure_logging
from catalog_import.db.base import engine
from catalog_import.db.storage_backend import PostgresStorageBackend
from catalog_import.errors.exceptions import CatalogImportError
from catalog_import.models.storage import CleanupOptions
from catalog_import.services.storage_guard import StorageQuotaGuard


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_command(args: argparse.Namespace) -> int:
    guard = StorageQuotaGuard(PostgresStorageBackend(engine), storage_settings)

    try:
        if args.command == "info":
            info = await guard.get_storage_info()
            print(f"📊 Database size: {info.size_mb:.2f} MB ({info.percent_of_limit:.1f}% of limit)")
            print(f"   Status: {info.status.value}")
            for table in info.largest_tables:
                print(f"   {table.table_name:<24} {table.total_bytes / (1024 * 1024):>10.2f} MB")

        elif args.command == "check":
            result = await guard.check_and_manage_storage()
            _print_json(result.model_dump(mode="json", exclude={"report"}))
            return 0 if result.can_proceed else 2

        elif args.command == "cleanup":
            options = CleanupOptions(
                keep_product_count=args.keep_products,
                retention_days=args.retention_days,
                purge_images=not args.keep_images,
                truncate_descriptions=args.truncate_descriptions,
                max_description_length=storage_settings.cleanup_description_length,
                vacuum_after_cleanup=not args.no_vacuum,
                backup_before_cleanup=not args.no_backup,
                backup_tables=list(storage_settings.backup_tables),
            )
            result = await guard.cleanup_database(options)
            print(f"🧹 Freed {result.mb_freed:.2f} MB ({result.percent_reduction:.1f}%)")
            _print_json(result.model_dump(mode="json", exclude={"options"}))

        elif args.command == "backup":
            path = await guard.backup_tables(args.tables or None)
            print(f"✅ Backup written: {path}")

        elif args.command == "restore":
            result = await guard.restore_backup(args.backup_path, args.tables or None)
            print(f"✅ Restored {result.records_restored} records into {result.tables_restored} tables")
            _print_json(result.model_dump(mode="json"))

    except CatalogImportError as e:
        print(f"❌ {type(e).__name__}: {e.message}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect and manage catalog database storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("info", help="Show database size and largest tables")
    subparsers.add_parser("check", help="Run the pre-import storage check (may clean up)")

    cleanup = subparsers.add_parser("cleanup", help="Run a cleanup pass")
    cleanup.add_argument(
        "--keep-products",
        type=int,
        default=storage_settings.warning_keep_products,
        help="Most recently updated products to keep (default: %(default)s)",
    )
    cleanup.add_argument(
        "--retention-days",
        type=int,
        default=storage_settings.retention_days,
        help="Delete prices/stocks older than this (default: %(default)s)",
    )
    cleanup.add_argument("--keep-images", action="store_true", help="Do not purge images")
    cleanup.add_argument("--truncate-descriptions", action="store_true", help="Shorten product descriptions")
    cleanup.add_argument("--no-vacuum", action="store_true", help="Skip VACUUM FULL")
    cleanup.add_argument("--no-backup", action="store_true", help="Skip the pre-cleanup backup")

    backup = subparsers.add_parser("backup", help="Snapshot tables to a JSON artifact")
    backup.add_argument("--tables", nargs="*", help="Tables to snapshot (default: all)")

    restore = subparsers.add_parser("restore", help="Restore rows from a JSON artifact")
    restore.add_argument("backup_path", help="Path of the backup artifact")
    restore.add_argument("--tables", nargs="*", help="Restrict to these tables")

    args = parser.parse_args()
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
