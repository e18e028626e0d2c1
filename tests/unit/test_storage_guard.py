"""Unit tests for the storage quota guard.

Capacity is 1000 bytes in these tests, so a size of 960 reads as 96%.
"""
from pathlib import Path

import pytest

from catalog_import.errors.exceptions import StorageError
from catalog_import.models.storage import CleanupOptions, StorageCheckOptions, StorageStatus
from catalog_import.services.storage_guard import StorageQuotaGuard, classify_storage
from tests.helpers import FakeStorageBackend


def _guard(storage_config, *sizes, **backend_kwargs):
    backend = FakeStorageBackend(list(sizes), **backend_kwargs)
    return StorageQuotaGuard(backend, storage_config), backend


class TestClassifyStorage:
    @pytest.mark.parametrize(
        "percent, expected",
        [
            (0.0, StorageStatus.OK),
            (79.99, StorageStatus.OK),
            (80.0, StorageStatus.WARNING),
            (94.99, StorageStatus.WARNING),
            (95.0, StorageStatus.CRITICAL),
            (120.0, StorageStatus.CRITICAL),
        ],
    )
    def test_thresholds_are_inclusive(self, percent, expected):
        assert classify_storage(percent, 80.0, 95.0) == expected


class TestStorageInfo:
    @pytest.mark.asyncio
    async def test_percent_of_limit(self, storage_config):
        guard, _ = _guard(storage_config, 500)

        info = await guard.get_storage_info()

        assert info.size_bytes == 500
        assert info.capacity_bytes == 1000
        assert info.percent_of_limit == 50.0
        assert info.status == StorageStatus.OK

    @pytest.mark.asyncio
    async def test_threshold_overrides(self, storage_config):
        guard, _ = _guard(storage_config, 500)

        info = await guard.get_storage_info(warning_threshold_percent=40, critical_threshold_percent=60)

        assert info.status == StorageStatus.WARNING

    @pytest.mark.asyncio
    async def test_zero_threshold_override_is_honoured(self, storage_config):
        guard, _ = _guard(storage_config, 10)

        info = await guard.get_storage_info(warning_threshold_percent=0)

        assert info.status == StorageStatus.WARNING


class TestCheckAndManageStorage:
    @pytest.mark.asyncio
    async def test_ok_does_nothing(self, storage_config):
        guard, backend = _guard(storage_config, 500)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is True
        assert result.status == StorageStatus.OK
        assert result.cleanup_performed is False
        assert backend.calls == ["measure_size"]

    @pytest.mark.asyncio
    async def test_critical_runs_aggressive_cleanup(self, storage_config):
        guard, backend = _guard(storage_config, 960, 960, 500, 500)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is True
        assert result.cleanup_performed is True
        assert result.blocked is False
        assert result.status == StorageStatus.OK
        assert result.cleanup.bytes_freed == 460
        assert result.cleanup.vacuumed is True
        assert backend.calls == [
            "measure_size",
            "measure_size",
            "snapshot_tables",
            "delete_rows",
            "vacuum",
            "measure_size",
            "measure_size",
        ]
        options = backend.deletions[0]
        assert options.keep_product_count == 100
        assert options.purge_images is True
        assert options.truncate_descriptions is True
        assert backend.snapshots == [["categories", "producers", "units"]]

    @pytest.mark.asyncio
    async def test_still_critical_blocks_import(self, storage_config):
        guard, _ = _guard(storage_config, 990)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is False
        assert result.blocked is True
        assert result.cleanup_performed is True
        assert result.status == StorageStatus.CRITICAL
        assert "remains critical" in result.message

    @pytest.mark.asyncio
    async def test_still_critical_proceeds_when_not_prevented(self, storage_config):
        guard, _ = _guard(storage_config, 990)
        options = StorageCheckOptions.from_settings(storage_config).model_copy(
            update={"prevent_import_on_critical": False}
        )

        result = await guard.check_and_manage_storage(options)

        assert result.can_proceed is True
        assert result.cleanup_performed is True

    @pytest.mark.asyncio
    async def test_critical_without_auto_cleanup_blocks(self, storage_config):
        guard, backend = _guard(storage_config, 990)
        options = StorageCheckOptions.from_settings(storage_config).model_copy(
            update={"auto_cleanup_on_critical": False}
        )

        result = await guard.check_and_manage_storage(options)

        assert result.can_proceed is False
        assert result.cleanup_performed is False
        assert "delete_rows" not in backend.calls

    @pytest.mark.asyncio
    async def test_warning_without_auto_cleanup(self, storage_config):
        guard, backend = _guard(storage_config, 850)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is True
        assert result.status == StorageStatus.WARNING
        assert result.cleanup_performed is False
        assert backend.deletions == []

    @pytest.mark.asyncio
    async def test_warning_light_cleanup(self, storage_config):
        guard, backend = _guard(storage_config, 850, 850, 700, 700)
        options = StorageCheckOptions.from_settings(storage_config).model_copy(
            update={"auto_cleanup_on_warning": True}
        )

        result = await guard.check_and_manage_storage(options)

        assert result.can_proceed is True
        assert result.cleanup_performed is True
        assert backend.deletions[0].keep_product_count == 200
        assert backend.deletions[0].truncate_descriptions is False

    @pytest.mark.asyncio
    async def test_measurement_failure_fails_open(self, storage_config):
        guard, _ = _guard(storage_config, 0, fail_measure=True)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is True
        assert result.error == "could not connect to server"
        assert result.status is None

    @pytest.mark.asyncio
    async def test_backup_failure_aborts_cleanup(self, storage_config):
        guard, backend = _guard(storage_config, 990, fail_backup=True)

        result = await guard.check_and_manage_storage()

        assert result.can_proceed is True
        assert result.error == "disk full"
        assert backend.deletions == []


class TestCleanupDatabase:
    @pytest.mark.asyncio
    async def test_deletion_and_vacuum_hold_write_lock(self, storage_config):
        held = []
        backend = FakeStorageBackend([900, 600])
        guard = StorageQuotaGuard(backend, storage_config)
        backend.on_delete = lambda: held.append(guard.write_lock.locked_exclusive)

        await guard.cleanup_database(CleanupOptions(backup_before_cleanup=False))

        assert held == [True]
        assert guard.write_lock.locked_exclusive is False

    @pytest.mark.asyncio
    async def test_vacuum_failure_is_reported(self, storage_config):
        guard, _ = _guard(storage_config, 900, 800, fail_vacuum=True)

        result = await guard.cleanup_database(CleanupOptions(backup_before_cleanup=False))

        assert result.vacuumed is False
        assert result.bytes_freed == 100
        assert result.percent_reduction == pytest.approx(11.11)
        assert result.rows_deleted == {"images": 10, "products": 5}

    @pytest.mark.asyncio
    async def test_backup_failure_raises_before_delete(self, storage_config):
        guard, backend = _guard(storage_config, 900, fail_backup=True)

        with pytest.raises(StorageError):
            await guard.cleanup_database()

        assert "delete_rows" not in backend.calls

    @pytest.mark.asyncio
    async def test_default_options_follow_settings(self, storage_config):
        guard, backend = _guard(storage_config, 900, 800)

        result = await guard.cleanup_database()

        assert result.options.keep_product_count == storage_config.warning_keep_products
        assert result.backup_path is not None
        assert backend.snapshots == [["categories", "producers", "units"]]


class TestBackupRestore:
    @pytest.mark.asyncio
    async def test_backup_all_tables(self, storage_config):
        guard, backend = _guard(storage_config, 500)

        path = await guard.backup_tables()

        assert backend.snapshots == [backend.tables]
        assert path.parent == Path(storage_config.backup_dir)
        assert path.name.startswith("backup_")

    @pytest.mark.asyncio
    async def test_backup_selected_tables(self, storage_config):
        guard, backend = _guard(storage_config, 500)

        await guard.backup_tables(["products"])

        assert "list_tables" not in backend.calls
        assert backend.snapshots == [["products"]]

    @pytest.mark.asyncio
    async def test_restore_delegates(self, storage_config):
        guard, _ = _guard(storage_config, 500)

        result = await guard.restore_backup("backups/backup_x.json", ["categories", "units"])

        assert result.tables_restored == 2
        assert result.records_restored == 4
        assert result.details["units"].inserted == 2
