"""Batch persistence engine.

Persists an :class:`EntityGraph` through a :class:`CatalogRepository` bound to
a caller-owned transaction:

    categories, producers, units → products → variants → stocks, prices
        → images (skippable) → documents, product_properties

For every entity type the engine loads existing business keys in one query,
splits incoming rows into inserts and updates, writes them in fixed-size
chunks (each inside its own savepoint), and records key → surrogate id for
created rows. Dependent types resolve their parent references through those
per-run key maps; a child whose parent cannot be resolved is skipped.

Failure model:
    - A failing chunk is retried row by row; rows that still fail are
      counted as errors. Sibling chunks and later types continue.
    - TransactionFatalError and ImportCancelledError propagate; the caller
      rolls back the transaction.
"""
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from catalog_import.config import ImportSettings, import_settings
from catalog_import.db.repository import CatalogRepository
from catalog_import.errors.exceptions import BatchWriteError
from catalog_import.models.entities import (
    CategoryRecord,
    DocumentRecord,
    EntityGraph,
    EntityType,
    ImageRecord,
    PriceRecord,
    ProducerRecord,
    ProductRecord,
    PropertyRecord,
    StockRecord,
    UnitRecord,
    VariantRecord,
)
from catalog_import.models.import_stats import ErrorEntry, ErrorKind, ImportStats
from catalog_import.services.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]

PERSIST_ORDER: Tuple[EntityType, ...] = (
    EntityType.CATEGORIES,
    EntityType.PRODUCERS,
    EntityType.UNITS,
    EntityType.PRODUCTS,
    EntityType.VARIANTS,
    EntityType.STOCKS,
    EntityType.PRICES,
    EntityType.IMAGES,
    EntityType.DOCUMENTS,
    EntityType.PRODUCT_PROPERTIES,
)

# Persistence occupies this slice of the overall job progress
PROGRESS_START = 30
PROGRESS_END = 95


class PersistOptions(BaseModel):
    """Options for one persistence run."""

    batch_size: int = Field(default=500, ge=1, le=5000)
    update_existing: bool = True
    skip_images: bool = False
    max_error_entries: int = Field(default=100, ge=1)

    @classmethod
    def from_settings(cls, config: ImportSettings) -> "PersistOptions":
        return cls(
            batch_size=config.batch_size,
            update_existing=config.update_existing,
            skip_images=config.skip_images,
            max_error_entries=config.max_error_entries,
        )


class UnresolvedReference(Exception):
    """A record's parent key is not in the run's key maps."""

    def __init__(self, parent_type: EntityType, parent_key: Hashable) -> None:
        super().__init__(f"Unresolved {parent_type.value} reference: {parent_key}")
        self.parent_type = parent_type
        self.parent_key = parent_key


class KeyMaps:
    """Business key → surrogate id maps owned by a single run."""

    def __init__(self) -> None:
        self._maps: Dict[EntityType, Dict[Hashable, Any]] = {t: {} for t in EntityType}

    def register(self, entity_type: EntityType, mapping: Dict[Hashable, Any]) -> None:
        self._maps[entity_type].update(mapping)

    def get(self, entity_type: EntityType, key: Optional[Hashable]) -> Optional[Any]:
        """Resolve an optional reference; None when absent or unknown."""
        if key is None or key == "":
            return None
        return self._maps[entity_type].get(key)

    def require(self, entity_type: EntityType, key: Hashable) -> Any:
        """Resolve a mandatory parent reference.

        Raises:
            UnresolvedReference: If the parent is neither stored nor created
        """
        value = self._maps[entity_type].get(key)
        if value is None:
            raise UnresolvedReference(entity_type, key)
        return value

    def size(self, entity_type: EntityType) -> int:
        return len(self._maps[entity_type])


# =============================================================================
# Record → row mapping
# =============================================================================

def _category_row(record: CategoryRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "external_id": record.id,
        "name": record.name or record.id,
        "path": record.path or None,
        "parent_external_id": record.parent_id,
        "idosell_path": record.idosell_path,
    }


def _producer_row(record: ProducerRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "name": record.name,
        "description": record.description or None,
        "website": record.website or None,
    }


def _unit_row(record: UnitRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {"external_id": record.id, "name": record.name or record.id, "moq": record.moq}


def _product_row(record: ProductRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "code": record.code,
        "name": record.name,
        "code_on_card": record.code_on_card or None,
        "ean": record.ean or None,
        "producer_code": record.producer_code or None,
        "vat": record.vat,
        "url": record.url or None,
        "delivery_date": record.delivery_date,
        "description_short": record.description_short or None,
        "description_long": record.description_long or None,
        "description_html": record.description_html or None,
        "status": record.status,
        "discontinued": record.discontinued,
        # Optional references: an unknown category/producer/unit is left unset
        "category_id": keys.get(EntityType.CATEGORIES, record.category_id),
        "producer_id": keys.get(EntityType.PRODUCERS, record.producer_name),
        "unit_id": keys.get(EntityType.UNITS, record.unit_id),
    }


def _variant_row(record: VariantRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "code": record.code,
        "product_id": keys.require(EntityType.PRODUCTS, record.product_code),
        "product_code": record.product_code,
        "name": record.name or None,
        "size": record.size or None,
        "color": record.color or None,
        "weight": record.weight,
        "gross_weight": record.gross_weight,
        "status": record.status,
    }


def _stock_row(record: StockRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "variant_id": keys.require(EntityType.VARIANTS, record.variant_code),
        "variant_code": record.variant_code,
        "quantity": record.quantity,
        "available": record.available,
        "min_order_qty": record.min_order_qty,
    }


def _price_row(record: PriceRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "variant_id": keys.require(EntityType.VARIANTS, record.variant_code),
        "variant_code": record.variant_code,
        "gross_price": record.gross_price,
        "net_price": record.net_price,
        "price_type": record.price_type,
        "currency": record.currency,
        "min_quantity": record.min_quantity,
    }


def _image_row(record: ImageRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "product_id": keys.require(EntityType.PRODUCTS, record.product_code),
        "product_code": record.product_code,
        "url": record.url,
        "is_main": record.is_main,
        "sort_order": record.order,
    }


def _document_row(record: DocumentRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "product_id": keys.require(EntityType.PRODUCTS, record.product_code),
        "product_code": record.product_code,
        "url": record.url,
        "doc_type": record.type or None,
        "title": record.title or None,
        "language": record.language,
    }


def _property_row(record: PropertyRecord, keys: KeyMaps) -> Dict[str, Any]:
    return {
        "product_id": keys.require(EntityType.PRODUCTS, record.product_code),
        "product_code": record.product_code,
        "name": record.name,
        "value": record.value or None,
        "group_name": record.group,
        "language": record.language,
        "sort_order": record.order,
        "is_filterable": record.is_filterable,
        "is_public": record.is_public,
    }


ROW_MAPPERS: Dict[EntityType, Callable[[Any, KeyMaps], Dict[str, Any]]] = {
    EntityType.CATEGORIES: _category_row,
    EntityType.PRODUCERS: _producer_row,
    EntityType.UNITS: _unit_row,
    EntityType.PRODUCTS: _product_row,
    EntityType.VARIANTS: _variant_row,
    EntityType.STOCKS: _stock_row,
    EntityType.PRICES: _price_row,
    EntityType.IMAGES: _image_row,
    EntityType.DOCUMENTS: _document_row,
    EntityType.PRODUCT_PROPERTIES: _property_row,
}


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def format_key(key: Hashable) -> str:
    if isinstance(key, tuple):
        return "/".join(str(part) for part in key)
    return str(key)


# =============================================================================
# Engine
# =============================================================================

class BatchPersistenceEngine:
    """Dependency-ordered, chunked writer for one entity graph.

    One engine instance serves one run: its key maps are created in
    :meth:`persist` and dropped when the call returns.

    Usage:
        async with session.begin():
            engine = BatchPersistenceEngine(SqlCatalogRepository(session))
            stats = await engine.persist(graph, token, progress)
    """

    def __init__(
        self,
        repository: CatalogRepository,
        options: Optional[PersistOptions] = None,
    ) -> None:
        self._repository = repository
        self._options = options or PersistOptions.from_settings(import_settings)

    async def persist(
        self,
        graph: EntityGraph,
        cancellation: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ImportStats:
        """Persist every entity type of ``graph`` in dependency order.

        Args:
            graph: Parsed entity graph
            cancellation: Checked before every entity type and every chunk
            progress: Awaited with (percent, stage) as rows are written

        Returns:
            ImportStats with per-type counters and structured errors

        Raises:
            TransactionFatalError: If the transaction or connection is lost
            ImportCancelledError: If cancellation is observed
        """
        stats = ImportStats(max_error_entries=self._options.max_error_entries)
        stats.start()
        keys = KeyMaps()
        tracker = _ProgressTracker(graph.total_rows(), progress)

        logger.info(
            "persistence_started",
            total_rows=graph.total_rows(),
            batch_size=self._options.batch_size,
            update_existing=self._options.update_existing,
            skip_images=self._options.skip_images,
        )

        for entity_type in PERSIST_ORDER:
            if cancellation is not None:
                await cancellation.checkpoint()

            records = graph.records(entity_type)
            type_stats = stats.for_type(entity_type.value)

            if entity_type == EntityType.IMAGES and self._options.skip_images:
                type_stats.skipped += len(records)
                await tracker.advance(len(records), entity_type)
                logger.info("entity_type_skipped", entity_type=entity_type.value, rows=len(records))
                continue

            if not records:
                continue

            await self._persist_type(entity_type, records, keys, stats, cancellation, tracker)

            logger.info(
                "entity_type_persisted",
                entity_type=entity_type.value,
                created=type_stats.created,
                updated=type_stats.updated,
                skipped=type_stats.skipped,
                errors=type_stats.errors,
            )

        stats.finish()
        logger.info(
            "persistence_completed",
            created=stats.total_created(),
            updated=stats.total_updated(),
            skipped=stats.total_skipped(),
            errors=stats.total_errors(),
            elapsed_seconds=stats.elapsed_seconds,
            rows_per_second=stats.rows_per_second,
        )
        return stats

    async def _persist_type(
        self,
        entity_type: EntityType,
        records: List[Any],
        keys: KeyMaps,
        stats: ImportStats,
        cancellation: Optional[CancellationToken],
        tracker: "_ProgressTracker",
    ) -> None:
        type_stats = stats.for_type(entity_type.value)
        mapper = ROW_MAPPERS[entity_type]

        existing = await self._repository.find_existing_keys(entity_type)
        keys.register(entity_type, existing)

        new_rows: List[Tuple[Hashable, Dict[str, Any]]] = []
        update_rows: List[Tuple[Hashable, Dict[str, Any]]] = []
        seen = set()

        for record in records:
            key = record.business_key()
            if key in seen:
                # duplicate business key inside one document
                type_stats.skipped += 1
                continue
            seen.add(key)

            try:
                row = mapper(record, keys)
            except UnresolvedReference as e:
                type_stats.skipped += 1
                stats.record_error(
                    ErrorEntry(
                        kind=ErrorKind.REFERENCE_UNRESOLVED,
                        entity_type=entity_type.value,
                        identifier=format_key(key),
                        message=str(e),
                    )
                )
                logger.debug(
                    "reference_unresolved",
                    entity_type=entity_type.value,
                    key=format_key(key),
                    parent_type=e.parent_type.value,
                )
                continue

            if key in existing:
                if self._options.update_existing:
                    update_rows.append((key, row))
                else:
                    type_stats.skipped += 1
            else:
                new_rows.append((key, row))

        handled = len(records) - len(new_rows) - len(update_rows)
        await tracker.advance(handled, entity_type)

        for chunk_index, chunk in enumerate(chunked(new_rows, self._options.batch_size)):
            if cancellation is not None:
                await cancellation.checkpoint()
            created = await self._insert_chunk(entity_type, chunk_index, chunk, stats)
            keys.register(entity_type, created)
            type_stats.created += len(created)
            await tracker.advance(len(chunk), entity_type)

        for chunk_index, chunk in enumerate(chunked(update_rows, self._options.batch_size)):
            if cancellation is not None:
                await cancellation.checkpoint()
            type_stats.updated += await self._update_chunk(entity_type, chunk_index, chunk, stats)
            await tracker.advance(len(chunk), entity_type)

    async def _insert_chunk(
        self,
        entity_type: EntityType,
        chunk_index: int,
        chunk: Sequence[Tuple[Hashable, Dict[str, Any]]],
        stats: ImportStats,
    ) -> Dict[Hashable, Any]:
        try:
            async with self._repository.savepoint():
                return await self._repository.bulk_insert(entity_type, [row for _, row in chunk])
        except BatchWriteError as e:
            logger.warning(
                "batch_insert_failed",
                entity_type=entity_type.value,
                chunk_index=chunk_index,
                row_count=len(chunk),
                error=e.message,
            )

        # Isolate the offending rows so the rest of the chunk still lands
        created: Dict[Hashable, Any] = {}
        for key, row in chunk:
            try:
                async with self._repository.savepoint():
                    created.update(await self._repository.bulk_insert(entity_type, [row]))
            except BatchWriteError as e:
                self._record_row_failure(stats, entity_type, chunk_index, key, e)
        return created

    async def _update_chunk(
        self,
        entity_type: EntityType,
        chunk_index: int,
        chunk: Sequence[Tuple[Hashable, Dict[str, Any]]],
        stats: ImportStats,
    ) -> int:
        try:
            async with self._repository.savepoint():
                for key, row in chunk:
                    await self._repository.update(entity_type, key, row)
            return len(chunk)
        except BatchWriteError as e:
            logger.warning(
                "batch_update_failed",
                entity_type=entity_type.value,
                chunk_index=chunk_index,
                row_count=len(chunk),
                error=e.message,
            )

        updated = 0
        for key, row in chunk:
            try:
                async with self._repository.savepoint():
                    await self._repository.update(entity_type, key, row)
                updated += 1
            except BatchWriteError as e:
                self._record_row_failure(stats, entity_type, chunk_index, key, e)
        return updated

    def _record_row_failure(
        self,
        stats: ImportStats,
        entity_type: EntityType,
        chunk_index: int,
        key: Hashable,
        error: BatchWriteError,
    ) -> None:
        stats.for_type(entity_type.value).errors += 1
        stats.record_error(
            ErrorEntry(
                kind=ErrorKind.BATCH_WRITE,
                entity_type=entity_type.value,
                identifier=format_key(key),
                message=error.message,
            )
        )
        logger.warning(
            "row_write_failed",
            entity_type=entity_type.value,
            chunk_index=chunk_index,
            key=format_key(key),
            error=error.message,
        )


class _ProgressTracker:
    """Maps rows handled onto the persistence slice of job progress."""

    def __init__(self, total_rows: int, callback: Optional[ProgressCallback]) -> None:
        self._total = max(total_rows, 1)
        self._done = 0
        self._callback = callback
        self._last_percent = -1

    async def advance(self, rows: int, entity_type: EntityType) -> None:
        self._done = min(self._total, self._done + rows)
        if self._callback is None:
            return
        span = PROGRESS_END - PROGRESS_START
        percent = PROGRESS_START + int(span * self._done / self._total)
        if percent != self._last_percent:
            self._last_percent = percent
            await self._callback(percent, f"persisting {entity_type.value}")
