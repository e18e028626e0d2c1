"""Storage quota guard.

Measures the database against a fixed capacity ceiling, cleans up and
backs up when thresholds are crossed, and decides whether an import may
start. Measurement or cleanup failures never block an import; only a
database that is still critical after cleanup does.
"""
import time
from pathlib import Path
from typing import List, Optional

import structlog

from catalog_import.config import StorageSettings, storage_settings
from catalog_import.db.storage_backend import StorageBackend
from catalog_import.errors.exceptions import CatalogImportError, StorageError
from catalog_import.models.storage import (
    BYTES_PER_GB,
    CleanupOptions,
    CleanupResult,
    RestoreResult,
    StorageCheckOptions,
    StorageCheckResult,
    StorageInfo,
    StorageStatus,
)
from catalog_import.services.write_lock import CatalogWriteLock

logger = structlog.get_logger(__name__)


def classify_storage(
    percent_of_limit: float,
    warning_threshold_percent: float,
    critical_threshold_percent: float,
) -> StorageStatus:
    """Classify a usage percentage; thresholds are inclusive."""
    if percent_of_limit >= critical_threshold_percent:
        return StorageStatus.CRITICAL
    if percent_of_limit >= warning_threshold_percent:
        return StorageStatus.WARNING
    return StorageStatus.OK


class StorageQuotaGuard:
    """Database size guard backed by a :class:`StorageBackend`.

    Args:
        backend: Storage collaborator (PostgreSQL in production)
        config: STORAGE_* settings; supplies capacity and defaults
        write_lock: Lock shared with the import pipeline; the cleanup holds
            it exclusive
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: Optional[StorageSettings] = None,
        write_lock: Optional[CatalogWriteLock] = None,
    ) -> None:
        self._backend = backend
        self._config = config or storage_settings
        self._write_lock = write_lock or CatalogWriteLock()

    @property
    def write_lock(self) -> CatalogWriteLock:
        return self._write_lock

    @property
    def capacity_bytes(self) -> int:
        return self._config.capacity_bytes

    async def get_storage_info(
        self,
        warning_threshold_percent: Optional[float] = None,
        critical_threshold_percent: Optional[float] = None,
    ) -> StorageInfo:
        """Measure and classify current database usage.

        Raises:
            StorageError: If the database cannot be measured
        """
        measurement = await self._backend.measure_size()
        percent = (measurement.size_bytes / self.capacity_bytes) * 100
        status = classify_storage(
            percent,
            warning_threshold_percent if warning_threshold_percent is not None
            else self._config.warning_threshold_percent,
            critical_threshold_percent if critical_threshold_percent is not None
            else self._config.critical_threshold_percent,
        )
        info = StorageInfo(
            size_bytes=measurement.size_bytes,
            capacity_bytes=self.capacity_bytes,
            percent_of_limit=round(percent, 2),
            status=status,
            largest_tables=measurement.largest_tables,
        )
        logger.debug(
            "storage_measured",
            size_mb=round(info.size_mb, 2),
            percent_of_limit=info.percent_of_limit,
            status=status.value,
        )
        return info

    # =========================================================================
    # Backup / restore
    # =========================================================================

    async def backup_tables(self, tables: Optional[List[str]] = None) -> Path:
        """Snapshot ``tables`` (all public tables when None) to the backup dir.

        Raises:
            StorageError: If reading or writing the snapshot fails
        """
        selected = list(tables) if tables is not None else await self._backend.list_tables()
        path = await self._backend.snapshot_tables(selected, Path(self._config.backup_dir))
        logger.info("storage_backup_created", backup_path=str(path), tables=selected)
        return path

    async def restore_backup(self, backup_path: str | Path, tables: Optional[List[str]] = None) -> RestoreResult:
        """Restore rows from a backup; existing rows are never overwritten.

        Raises:
            StorageError: If the artifact is missing or malformed
        """
        result = await self._backend.restore_snapshot(Path(backup_path), tables)
        logger.info(
            "storage_backup_restored",
            backup_path=str(backup_path),
            tables_restored=result.tables_restored,
            records_restored=result.records_restored,
        )
        return result

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup_database(self, options: Optional[CleanupOptions] = None) -> CleanupResult:
        """Back up, delete, then compact.

        The row deletion runs in one transaction; VACUUM runs afterwards,
        outside it. Both wait for open import transactions to finish and hold
        off new ones until they are done. A failed backup aborts the cleanup
        before anything is deleted. A failed VACUUM is logged and reported as
        ``vacuumed=False``.

        Raises:
            StorageError: If measuring, backing up or deleting fails
        """
        options = options or CleanupOptions(
            keep_product_count=self._config.warning_keep_products,
            retention_days=self._config.retention_days,
            max_description_length=self._config.cleanup_description_length,
            backup_before_cleanup=self._config.backup_before_cleanup,
            backup_tables=list(self._config.backup_tables),
        )
        started = time.monotonic()
        initial = await self.get_storage_info()
        logger.info(
            "storage_cleanup_started",
            size_mb=round(initial.size_mb, 2),
            keep_product_count=options.keep_product_count,
            purge_images=options.purge_images,
            truncate_descriptions=options.truncate_descriptions,
        )

        backup_path: Optional[Path] = None
        if options.backup_before_cleanup:
            backup_path = await self.backup_tables(options.backup_tables)

        vacuumed = False
        async with self._write_lock.exclusive():
            report = await self._backend.delete_rows(options)
            if options.vacuum_after_cleanup:
                try:
                    await self._backend.vacuum()
                    vacuumed = True
                except StorageError as e:
                    logger.warning("storage_vacuum_failed", error=e.message)

        final = await self.get_storage_info()
        freed = initial.size_bytes - final.size_bytes
        result = CleanupResult(
            initial_bytes=initial.size_bytes,
            final_bytes=final.size_bytes,
            bytes_freed=freed,
            percent_reduction=round((freed / initial.size_bytes) * 100, 2) if initial.size_bytes else 0.0,
            duration_seconds=round(time.monotonic() - started, 3),
            rows_deleted=report.rows_deleted,
            descriptions_truncated=report.descriptions_truncated,
            backup_path=str(backup_path) if backup_path else None,
            vacuumed=vacuumed,
            options=options,
        )
        logger.info(
            "storage_cleanup_completed",
            mb_freed=round(result.mb_freed, 2),
            percent_reduction=result.percent_reduction,
            duration_seconds=result.duration_seconds,
            rows_deleted=result.rows_deleted,
        )
        return result

    # =========================================================================
    # Pre-import check
    # =========================================================================

    async def check_and_manage_storage(
        self,
        options: Optional[StorageCheckOptions] = None,
    ) -> StorageCheckResult:
        """Evaluate storage before an import and act on the thresholds.

        - critical: optional aggressive cleanup, re-measure; blocks when
          still critical (or not cleaned) and ``prevent_import_on_critical``
        - warning: optional light cleanup; never blocks
        - ok: nothing

        Errors while measuring or cleaning are logged and reported with
        ``can_proceed=True``.
        """
        opts = options or StorageCheckOptions.from_settings(self._config)
        warning = opts.warning_threshold_percent
        critical = opts.critical_threshold_percent

        try:
            info = await self.get_storage_info(warning, critical)

            if info.status == StorageStatus.CRITICAL:
                logger.warning(
                    "storage_critical",
                    size_gb=round(info.size_bytes / BYTES_PER_GB, 3),
                    capacity_gb=round(self.capacity_bytes / BYTES_PER_GB, 3),
                    percent_of_limit=info.percent_of_limit,
                )
                if not opts.auto_cleanup_on_critical:
                    if opts.prevent_import_on_critical:
                        return self._blocked(
                            "Storage is critical. Import not allowed.", info, None
                        )
                    return self._proceed(info, None)

                cleanup = await self.cleanup_database(
                    CleanupOptions(
                        keep_product_count=opts.critical_keep_products,
                        retention_days=opts.retention_days,
                        purge_images=True,
                        truncate_descriptions=True,
                        max_description_length=opts.cleanup_description_length,
                        backup_before_cleanup=opts.backup_before_cleanup,
                        backup_tables=list(opts.backup_tables),
                    )
                )
                info = await self.get_storage_info(warning, critical)
                if info.status == StorageStatus.CRITICAL and opts.prevent_import_on_critical:
                    return self._blocked(
                        "Storage remains critical after cleanup. Import not allowed.",
                        info,
                        cleanup,
                    )
                return self._proceed(info, cleanup)

            if info.status == StorageStatus.WARNING:
                logger.warning(
                    "storage_warning",
                    size_gb=round(info.size_bytes / BYTES_PER_GB, 3),
                    percent_of_limit=info.percent_of_limit,
                )
                if opts.auto_cleanup_on_warning:
                    cleanup = await self.cleanup_database(
                        CleanupOptions(
                            keep_product_count=opts.warning_keep_products,
                            retention_days=opts.retention_days,
                            purge_images=True,
                            truncate_descriptions=False,
                            backup_before_cleanup=opts.backup_before_cleanup,
                            backup_tables=list(opts.backup_tables),
                        )
                    )
                    info = await self.get_storage_info(warning, critical)
                    return self._proceed(info, cleanup)

            return self._proceed(info, None)

        except CatalogImportError as e:
            return self._failed_open(e.message, type(e).__name__)
        except Exception as e:
            return self._failed_open(str(e), type(e).__name__)

    def _proceed(self, info: StorageInfo, cleanup: Optional[CleanupResult]) -> StorageCheckResult:
        if cleanup is not None:
            message = f"Cleanup performed, freed {cleanup.mb_freed:.2f} MB"
        else:
            message = (
                f"Storage {info.status.value}: {info.size_bytes / BYTES_PER_GB:.2f} GB "
                f"({info.percent_of_limit:.1f}%)"
            )
        return StorageCheckResult(
            can_proceed=True,
            status=info.status,
            cleanup_performed=cleanup is not None,
            message=message,
            report=info,
            cleanup=cleanup,
        )

    def _blocked(
        self,
        message: str,
        info: StorageInfo,
        cleanup: Optional[CleanupResult],
    ) -> StorageCheckResult:
        logger.error(
            "storage_import_blocked",
            percent_of_limit=info.percent_of_limit,
            cleanup_performed=cleanup is not None,
        )
        return StorageCheckResult(
            can_proceed=False,
            status=info.status,
            cleanup_performed=cleanup is not None,
            blocked=True,
            message=message,
            report=info,
            cleanup=cleanup,
        )

    def _failed_open(self, error: str, error_type: str) -> StorageCheckResult:
        logger.error("storage_check_failed", error=error, error_type=error_type)
        return StorageCheckResult(
            can_proceed=True,
            message="Storage check failed, proceeding with caution",
            error=error,
        )
