"""In-memory collaborators for unit tests."""
import asyncio
import copy
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Hashable, List, Optional
from uuid import uuid4

from catalog_import.db.repository import ENTITY_TABLES, CatalogRepository
from catalog_import.db.storage_backend import StorageBackend, backup_filename
from catalog_import.errors.exceptions import BatchWriteError, StorageError, TransactionFatalError
from catalog_import.models.entities import EntityType
from catalog_import.models.storage import (
    CleanupOptions,
    DeletionReport,
    RestoreResult,
    SizeMeasurement,
    TableRestoreDetail,
)

RowPredicate = Callable[[EntityType, Dict[str, Any]], bool]


class FakeCatalogRepository(CatalogRepository):
    """Dict-backed repository with savepoint and transaction semantics.

    Args:
        fail_when: Rows matching this predicate raise BatchWriteError
        fatal_on: Writing this entity type raises TransactionFatalError
        commit_gate: When set, commits wait for this event; ``commit_started``
            is set once a transaction reaches its commit
    """

    def __init__(
        self,
        fail_when: Optional[RowPredicate] = None,
        fatal_on: Optional[EntityType] = None,
        commit_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.tables: Dict[EntityType, Dict[Hashable, Dict[str, Any]]] = {t: {} for t in EntityType}
        self.fail_when = fail_when
        self.fatal_on = fatal_on
        self.commit_gate = commit_gate
        self.commit_started = asyncio.Event()
        self.open_transactions = 0
        self.insert_calls: List[tuple] = []
        self.update_calls: List[tuple] = []
        self.committed = 0
        self.rolled_back = 0

    # =========================================================================
    # CatalogRepository
    # =========================================================================

    async def find_existing_keys(self, entity_type: EntityType) -> Dict[Hashable, Any]:
        return {key: row["id"] for key, row in self.tables[entity_type].items()}

    async def bulk_insert(self, entity_type: EntityType, rows: List[Dict[str, Any]]) -> Dict[Hashable, Any]:
        self.insert_calls.append((entity_type, len(rows)))
        self._check_fatal(entity_type)

        created: Dict[Hashable, Any] = {}
        for row in rows:
            if self.fail_when is not None and self.fail_when(entity_type, row):
                raise BatchWriteError("row rejected", entity_type.value, -1, len(rows))
            key = self.key_of(entity_type, row)
            if key in self.tables[entity_type]:
                raise BatchWriteError("duplicate key value", entity_type.value, -1, len(rows))
            stored = dict(row, id=uuid4())
            self.tables[entity_type][key] = stored
            created[key] = stored["id"]
        return created

    async def update(self, entity_type: EntityType, key: Hashable, row: Dict[str, Any]) -> None:
        self.update_calls.append((entity_type, key))
        self._check_fatal(entity_type)
        if self.fail_when is not None and self.fail_when(entity_type, row):
            raise BatchWriteError("row rejected", entity_type.value, -1, 1)
        self.tables[entity_type][key].update(row)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snapshot = self.snapshot()
        try:
            yield
        except BatchWriteError:
            self.tables = snapshot
            raise

    # =========================================================================
    # Test helpers
    # =========================================================================

    @staticmethod
    def key_of(entity_type: EntityType, row: Dict[str, Any]) -> Hashable:
        _, key_columns = ENTITY_TABLES[entity_type]
        if len(key_columns) == 1:
            return row[key_columns[0]]
        return tuple(row[name] for name in key_columns)

    def snapshot(self) -> Dict[EntityType, Dict[Hashable, Dict[str, Any]]]:
        return copy.deepcopy(self.tables)

    def count(self, entity_type: EntityType) -> int:
        return len(self.tables[entity_type])

    def counts(self) -> Dict[str, int]:
        return {t.value: len(rows) for t, rows in self.tables.items() if rows}

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["FakeCatalogRepository"]:
        """Transaction factory: commit on success, restore state on any error."""
        snapshot = self.snapshot()
        self.open_transactions += 1
        try:
            try:
                yield self
            except BaseException:
                self.tables = snapshot
                self.rolled_back += 1
                raise
            if self.commit_gate is not None:
                self.commit_started.set()
                await self.commit_gate.wait()
            self.committed += 1
        finally:
            self.open_transactions -= 1

    def _check_fatal(self, entity_type: EntityType) -> None:
        if self.fatal_on == entity_type:
            raise TransactionFatalError("server closed the connection unexpectedly")


class FakeStorageBackend(StorageBackend):
    """Scripted storage backend.

    ``sizes`` are returned by successive measurements; the last one repeats.
    """

    def __init__(
        self,
        sizes: List[int],
        tables: Optional[List[str]] = None,
        fail_measure: bool = False,
        fail_backup: bool = False,
        fail_vacuum: bool = False,
        on_delete: Optional[Callable[[], None]] = None,
    ) -> None:
        self._sizes = list(sizes)
        self.tables = tables or ["categories", "producers", "units", "products"]
        self.fail_measure = fail_measure
        self.fail_backup = fail_backup
        self.fail_vacuum = fail_vacuum
        self.on_delete = on_delete
        self.calls: List[str] = []
        self.deletions: List[CleanupOptions] = []
        self.snapshots: List[List[str]] = []

    async def measure_size(self) -> SizeMeasurement:
        self.calls.append("measure_size")
        if self.fail_measure:
            raise StorageError("could not connect to server")
        size = self._sizes.pop(0) if len(self._sizes) > 1 else self._sizes[0]
        return SizeMeasurement(size_bytes=size)

    async def delete_rows(self, options: CleanupOptions) -> DeletionReport:
        self.calls.append("delete_rows")
        if self.on_delete is not None:
            self.on_delete()
        self.deletions.append(options)
        return DeletionReport(
            rows_deleted={"images": 10 if options.purge_images else 0, "products": 5},
            descriptions_truncated=3 if options.truncate_descriptions else 0,
            retained_products=options.keep_product_count,
        )

    async def vacuum(self) -> None:
        self.calls.append("vacuum")
        if self.fail_vacuum:
            raise StorageError("VACUUM failed")

    async def list_tables(self) -> List[str]:
        self.calls.append("list_tables")
        return list(self.tables)

    async def snapshot_tables(self, tables: List[str], backup_dir: Path) -> Path:
        self.calls.append("snapshot_tables")
        if self.fail_backup:
            raise StorageError("disk full")
        self.snapshots.append(list(tables))
        return backup_dir / backup_filename()

    async def restore_snapshot(self, path: Path, tables: Optional[List[str]] = None) -> RestoreResult:
        self.calls.append("restore_snapshot")
        selected = tables or ["categories"]
        return RestoreResult(
            backup_path=str(path),
            tables_restored=len(selected),
            records_restored=2 * len(selected),
            details={name: TableRestoreDetail(total=2, inserted=2) for name in selected},
        )
