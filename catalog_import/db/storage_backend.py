"""Storage collaborator used by the storage quota guard.

:class:`PostgresStorageBackend` measures the database, runs the destructive
cleanup inside its own transaction, compacts with ``VACUUM FULL`` outside any
transaction, and snapshots/restores tables as JSON artifacts.

Import transactions and the cleanup never overlap across processes: imports
hold the PostgreSQL advisory lock :data:`CATALOG_WRITE_LOCK_KEY` shared, the
cleanup transaction and VACUUM hold it exclusive.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from catalog_import.db.models import Image, Price, Product, Stock, Variant
from catalog_import.errors.exceptions import StorageError
from catalog_import.models.storage import (
    CleanupOptions,
    DeletionReport,
    RestoreResult,
    SizeMeasurement,
    TableRestoreDetail,
    TableSize,
)

logger = structlog.get_logger(__name__)

BACKUP_FORMAT_VERSION = "1.0"

# Advisory lock key: imports take it shared, cleanup and VACUUM exclusive
CATALOG_WRITE_LOCK_KEY = 0x43415447

# Restore order; tables not listed here are restored after these
TABLE_DEPENDENCY_ORDER = (
    "categories",
    "producers",
    "units",
    "products",
    "variants",
    "stocks",
    "prices",
    "images",
    "documents",
    "product_properties",
)

DESCRIPTION_COLUMNS = ("description_short", "description_long", "description_html")


async def lock_catalog_writes(session: AsyncSession, exclusive: bool = False) -> None:
    """Take the catalog write lock for the rest of the session's transaction."""
    function = "pg_advisory_xact_lock" if exclusive else "pg_advisory_xact_lock_shared"
    await session.execute(text(f"SELECT {function}(:key)"), {"key": CATALOG_WRITE_LOCK_KEY})


def backup_filename(moment: Optional[datetime] = None) -> str:
    """``backup_<UTC timestamp>.json`` with filesystem-safe separators."""
    moment = moment or datetime.now(timezone.utc)
    return f"backup_{moment.strftime('%Y-%m-%dT%H-%M-%S-%f')}Z.json"


def order_tables(tables: List[str]) -> List[str]:
    """Sort table names so parents are restored before their children."""
    rank = {name: index for index, name in enumerate(TABLE_DEPENDENCY_ORDER)}
    return sorted(tables, key=lambda name: (rank.get(name, len(rank)), name))


def read_backup_artifact(path: Path) -> Dict[str, Any]:
    """Load and validate a backup artifact.

    Raises:
        StorageError: If the file is missing or not a backup artifact
    """
    if not path.is_file():
        raise StorageError(f"Backup file not found: {path}", {"backup_path": str(path)})
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise StorageError(f"Backup file is unreadable: {e}", {"backup_path": str(path)}) from e

    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise StorageError(
            "Invalid backup format: missing 'data' section",
            {"backup_path": str(path)},
        )
    return payload


def write_backup_artifact(path: Path, tables: List[str], data: Dict[str, List[Dict[str, Any]]]) -> None:
    payload = {
        "metadata": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tables": tables,
            "version": BACKUP_FORMAT_VERSION,
        },
        "data": data,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_jsonable_python(payload), indent=2), encoding="utf-8")


class StorageBackend(ABC):
    """Storage operations the guard relies on."""

    @abstractmethod
    async def measure_size(self) -> SizeMeasurement:
        """Current database size and its largest tables."""
        pass

    @abstractmethod
    async def delete_rows(self, options: CleanupOptions) -> DeletionReport:
        """Run the destructive part of a cleanup in a single transaction."""
        pass

    @abstractmethod
    async def vacuum(self) -> None:
        """Reclaim space. Must run outside any transaction."""
        pass

    @abstractmethod
    async def list_tables(self) -> List[str]:
        pass

    @abstractmethod
    async def snapshot_tables(self, tables: List[str], backup_dir: Path) -> Path:
        """Serialize full row sets of ``tables`` to a new artifact and return its path."""
        pass

    @abstractmethod
    async def restore_snapshot(self, path: Path, tables: Optional[List[str]] = None) -> RestoreResult:
        """Re-insert rows from an artifact without overwriting existing rows."""
        pass


class PostgresStorageBackend(StorageBackend):
    """PostgreSQL implementation."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._engine = engine
        self._session_maker = session_maker or async_sessionmaker(engine, expire_on_commit=False)

    # =========================================================================
    # Measurement
    # =========================================================================

    async def measure_size(self) -> SizeMeasurement:
        try:
            async with self._engine.connect() as conn:
                size = await conn.scalar(text("SELECT pg_database_size(current_database())"))
                rows = await conn.execute(
                    text(
                        """
                        SELECT c.relname AS table_name,
                               pg_total_relation_size(c.oid) AS total_bytes
                        FROM pg_class c
                        JOIN pg_namespace n ON n.oid = c.relnamespace
                        WHERE n.nspname = 'public' AND c.relkind = 'r'
                        ORDER BY pg_total_relation_size(c.oid) DESC
                        LIMIT 10
                        """
                    )
                )
                tables = [
                    TableSize(table_name=row.table_name, total_bytes=int(row.total_bytes))
                    for row in rows
                ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to measure database size: {e}") from e

        return SizeMeasurement(size_bytes=int(size or 0), largest_tables=tables)

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def delete_rows(self, options: CleanupOptions) -> DeletionReport:
        report = DeletionReport()
        cutoff = datetime.now(timezone.utc) - timedelta(days=options.retention_days)
        keep_ids = (
            select(Product.id)
            .order_by(Product.updated_at.desc())
            .limit(options.keep_product_count)
        )

        try:
            async with self._session_maker.begin() as session:
                await lock_catalog_writes(session, exclusive=True)
                if options.purge_images:
                    result = await session.execute(
                        delete(Image).execution_options(synchronize_session=False)
                    )
                    report.rows_deleted["images"] = result.rowcount or 0

                report.rows_deleted["prices"] = await self._delete_stale(
                    session, Price, cutoff, keep_ids if options.exempt_retained_children else None
                )
                report.rows_deleted["stocks"] = await self._delete_stale(
                    session, Stock, cutoff, keep_ids if options.exempt_retained_children else None
                )

                total_products = await session.scalar(select(func.count()).select_from(Product)) or 0
                if total_products > options.keep_product_count:
                    result = await session.execute(
                        delete(Product)
                        .where(Product.id.not_in(keep_ids))
                        .execution_options(synchronize_session=False)
                    )
                    report.rows_deleted["products"] = result.rowcount or 0
                report.retained_products = min(total_products, options.keep_product_count)

                if options.truncate_descriptions:
                    report.descriptions_truncated = await self._truncate_descriptions(
                        session, options.max_description_length
                    )
        except SQLAlchemyError as e:
            logger.error(
                "storage_cleanup_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StorageError(f"Cleanup transaction failed: {e}") from e

        logger.info(
            "storage_rows_deleted",
            rows_deleted=report.rows_deleted,
            descriptions_truncated=report.descriptions_truncated,
            retained_products=report.retained_products,
        )
        return report

    async def _delete_stale(self, session: AsyncSession, model, cutoff: datetime, keep_ids) -> int:
        stmt = (
            delete(model)
            .where(model.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        if keep_ids is not None:
            retained_variants = select(Variant.id).where(Variant.product_id.in_(keep_ids))
            stmt = stmt.where(model.variant_id.not_in(retained_variants))
        result = await session.execute(stmt)
        return result.rowcount or 0

    async def _truncate_descriptions(self, session: AsyncSession, max_length: int) -> int:
        truncated = 0
        for column_name in DESCRIPTION_COLUMNS:
            column = getattr(Product, column_name)
            result = await session.execute(
                update(Product)
                .where(func.length(column) > max_length)
                .values({column_name: func.left(column, max_length)})
                .execution_options(synchronize_session=False)
            )
            truncated += result.rowcount or 0
        return truncated

    async def vacuum(self) -> None:
        try:
            async with self._engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                lock_params = {"key": CATALOG_WRITE_LOCK_KEY}
                await conn.execute(text("SELECT pg_advisory_lock(:key)"), lock_params)
                try:
                    await conn.execute(text("VACUUM FULL"))
                finally:
                    await conn.execute(text("SELECT pg_advisory_unlock(:key)"), lock_params)
        except SQLAlchemyError as e:
            raise StorageError(f"VACUUM failed: {e}") from e
        logger.info("storage_vacuum_completed")

    # =========================================================================
    # Backup / restore
    # =========================================================================

    async def list_tables(self) -> List[str]:
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text("SELECT tablename FROM pg_tables WHERE schemaname = 'public'")
                )
                return order_tables([row.tablename for row in result])
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list tables: {e}") from e

    async def snapshot_tables(self, tables: List[str], backup_dir: Path) -> Path:
        known = set(await self.list_tables())
        missing = [name for name in tables if name not in known]
        if missing:
            raise StorageError(f"Unknown tables: {', '.join(missing)}", {"tables": missing})

        data: Dict[str, List[Dict[str, Any]]] = {}
        try:
            async with self._engine.connect() as conn:
                preparer = conn.dialect.identifier_preparer
                for table in tables:
                    result = await conn.execute(text(f"SELECT * FROM {preparer.quote(table)}"))
                    data[table] = [dict(row) for row in result.mappings()]
                    logger.debug("table_snapshot_read", table=table, rows=len(data[table]))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read tables for backup: {e}") from e

        path = Path(backup_dir) / backup_filename()
        try:
            await asyncio.to_thread(write_backup_artifact, path, tables, data)
        except OSError as e:
            raise StorageError(f"Failed to write backup file: {e}", {"backup_path": str(path)}) from e
        return path

    async def restore_snapshot(self, path: Path, tables: Optional[List[str]] = None) -> RestoreResult:
        path = Path(path)
        payload = await asyncio.to_thread(read_backup_artifact, path)
        data: Dict[str, Any] = payload["data"]
        known = set(await self.list_tables())

        selected = order_tables([
            name for name in data
            if (tables is None or name in tables) and name in known
        ])
        result = RestoreResult(backup_path=str(path))

        try:
            async with self._session_maker.begin() as session:
                preparer = self._engine.dialect.identifier_preparer
                for table in selected:
                    rows = data[table] or []
                    if not rows:
                        result.details[table] = TableRestoreDetail(total=0, inserted=0)
                        continue
                    quoted = preparer.quote(table)
                    # PostgreSQL coerces each JSON field to its column type
                    stmt = text(
                        f"INSERT INTO {quoted} "
                        f"SELECT * FROM json_populate_recordset(NULL::{quoted}, CAST(:payload AS json)) "
                        f"ON CONFLICT DO NOTHING"
                    )
                    try:
                        async with session.begin_nested():
                            outcome = await session.execute(stmt, {"payload": json.dumps(rows)})
                        inserted = outcome.rowcount or 0
                    except SQLAlchemyError as e:
                        logger.warning("table_restore_failed", table=table, error=str(e))
                        inserted = 0

                    result.details[table] = TableRestoreDetail(total=len(rows), inserted=inserted)
                    result.records_restored += inserted
                    result.tables_restored += 1
                    logger.info("table_restored", table=table, total=len(rows), inserted=inserted)
        except SQLAlchemyError as e:
            raise StorageError(f"Restore transaction failed: {e}", {"backup_path": str(path)}) from e

        return result
