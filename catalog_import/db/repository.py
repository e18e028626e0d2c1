"""Catalog persistence collaborator.

The persistence engine talks to storage exclusively through
:class:`CatalogRepository`. The SQL implementation is handed an
``AsyncSession`` whose transaction is owned by the caller; it never commits
or rolls back the outer transaction itself.
"""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Hashable, List, Sequence, Tuple, Type

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_import.db.base import Base
from catalog_import.db.models import (
    Category,
    Document,
    Image,
    Price,
    Producer,
    Product,
    ProductProperty,
    Stock,
    Unit,
    Variant,
)
from catalog_import.errors.exceptions import BatchWriteError, TransactionFatalError
from catalog_import.models.entities import EntityType

logger = structlog.get_logger(__name__)

# asyncpg refuses statements with more bind parameters than this
MAX_BIND_PARAMETERS = 32767


# Table and business-key columns per entity type. Key column order matches
# the record's business_key() tuple order.
ENTITY_TABLES: Dict[EntityType, Tuple[Type[Base], Tuple[str, ...]]] = {
    EntityType.CATEGORIES: (Category, ("external_id",)),
    EntityType.PRODUCERS: (Producer, ("name",)),
    EntityType.UNITS: (Unit, ("external_id",)),
    EntityType.PRODUCTS: (Product, ("code",)),
    EntityType.VARIANTS: (Variant, ("code",)),
    EntityType.STOCKS: (Stock, ("variant_code",)),
    EntityType.PRICES: (Price, ("variant_code", "price_type", "currency", "min_quantity")),
    EntityType.IMAGES: (Image, ("product_code", "url")),
    EntityType.DOCUMENTS: (Document, ("product_code", "url")),
    EntityType.PRODUCT_PROPERTIES: (ProductProperty, ("product_code", "name", "language")),
}


def is_transaction_fatal(error: BaseException) -> bool:
    """Whether a database error means the connection or transaction is gone."""
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


def row_key(row: Sequence[Any], width: int) -> Hashable:
    """Build a business key from the leading ``width`` columns of a row."""
    if width == 1:
        return row[0]
    return tuple(row[:width])


class CatalogRepository(ABC):
    """Persistence operations used by the batch persistence engine.

    Business keys are scalars for single-column keys and tuples for
    composite keys, exactly as returned by the records' ``business_key()``.
    """

    @abstractmethod
    async def find_existing_keys(self, entity_type: EntityType) -> Dict[Hashable, Any]:
        """Return business key → surrogate id for every stored row of a type."""
        pass

    @abstractmethod
    async def bulk_insert(self, entity_type: EntityType, rows: List[Dict[str, Any]]) -> Dict[Hashable, Any]:
        """Insert rows and return business key → surrogate id of created rows.

        Raises:
            BatchWriteError: If the rows could not be written
            TransactionFatalError: If the connection or transaction was lost
        """
        pass

    @abstractmethod
    async def update(self, entity_type: EntityType, key: Hashable, row: Dict[str, Any]) -> None:
        """Overwrite the stored row identified by ``key``.

        Raises:
            BatchWriteError: If the row could not be written
            TransactionFatalError: If the connection or transaction was lost
        """
        pass

    @abstractmethod
    def savepoint(self) -> Any:
        """Async context manager isolating one chunk.

        A write error inside the block undoes only that block's writes.
        """
        pass


class SqlCatalogRepository(CatalogRepository):
    """SQLAlchemy/PostgreSQL implementation over a caller-owned session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_existing_keys(self, entity_type: EntityType) -> Dict[Hashable, Any]:
        model, key_columns = ENTITY_TABLES[entity_type]
        table = model.__table__
        columns = [table.c[name] for name in key_columns]

        try:
            result = await self._session.execute(select(*columns, table.c.id))
        except SQLAlchemyError as e:
            logger.error(
                "find_existing_keys_failed",
                entity_type=entity_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransactionFatalError(
                f"Failed to load existing {entity_type.value} keys: {e}",
                {"entity_type": entity_type.value},
            ) from e

        width = len(key_columns)
        return {row_key(row, width): row[width] for row in result.all()}

    async def bulk_insert(self, entity_type: EntityType, rows: List[Dict[str, Any]]) -> Dict[Hashable, Any]:
        if not rows:
            return {}

        model, key_columns = ENTITY_TABLES[entity_type]
        table = model.__table__
        returning = [table.c[name] for name in key_columns]
        width = len(key_columns)
        rows_per_statement = max(1, MAX_BIND_PARAMETERS // max(1, len(rows[0])))

        inserted: Dict[Hashable, Any] = {}
        for start in range(0, len(rows), rows_per_statement):
            stmt = (
                insert(table)
                .values(rows[start:start + rows_per_statement])
                .returning(*returning, table.c.id)
            )
            try:
                result = await self._session.execute(stmt)
            except SQLAlchemyError as e:
                self._raise_write_error(e, entity_type, len(rows))
            inserted.update({row_key(row, width): row[width] for row in result.all()})
        return inserted

    async def update(self, entity_type: EntityType, key: Hashable, row: Dict[str, Any]) -> None:
        model, key_columns = ENTITY_TABLES[entity_type]
        table = model.__table__
        key_values = key if isinstance(key, tuple) else (key,)
        condition = and_(*[table.c[name] == value for name, value in zip(key_columns, key_values)])
        values = {name: value for name, value in row.items() if name not in key_columns}

        try:
            await self._session.execute(update(table).where(condition).values(**values))
        except SQLAlchemyError as e:
            self._raise_write_error(e, entity_type, 1)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        try:
            async with self._session.begin_nested():
                yield
        except SQLAlchemyError as e:
            # Failure to create or release the savepoint itself
            if is_transaction_fatal(e):
                raise TransactionFatalError(f"Transaction lost: {e}") from e
            raise BatchWriteError(f"Savepoint failed: {e}", "unknown", -1, 0) from e

    def _raise_write_error(self, error: SQLAlchemyError, entity_type: EntityType, row_count: int) -> None:
        if is_transaction_fatal(error):
            logger.error(
                "transaction_fatal_error",
                entity_type=entity_type.value,
                error=str(error),
                error_type=type(error).__name__,
            )
            raise TransactionFatalError(
                f"Database connection lost while writing {entity_type.value}: {error}",
                {"entity_type": entity_type.value},
            ) from error
        raise BatchWriteError(
            f"Failed to write {entity_type.value}: {getattr(error, 'orig', None) or error}",
            entity_type=entity_type.value,
            chunk_index=-1,
            row_count=row_count,
        ) from error
