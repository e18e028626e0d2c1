"""Pydantic models for catalog import."""
from catalog_import.models.import_stats import (
    EntityStats,
    ErrorEntry,
    ErrorKind,
    ImportStats,
)
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
from catalog_import.models.job import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    ImportJob,
    JobFilter,
    JobStatus,
)
from catalog_import.models.storage import (
    CleanupOptions,
    CleanupResult,
    DeletionReport,
    RestoreResult,
    SizeMeasurement,
    StorageCheckOptions,
    StorageCheckResult,
    StorageInfo,
    StorageStatus,
    TableRestoreDetail,
    TableSize,
)

__all__ = [
    "EntityStats",
    "ErrorEntry",
    "ErrorKind",
    "ImportStats",
    "CategoryRecord",
    "DocumentRecord",
    "EntityGraph",
    "EntityType",
    "ImageRecord",
    "PriceRecord",
    "ProducerRecord",
    "ProductRecord",
    "PropertyRecord",
    "StockRecord",
    "UnitRecord",
    "VariantRecord",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "ImportJob",
    "JobFilter",
    "JobStatus",
    "CleanupOptions",
    "CleanupResult",
    "DeletionReport",
    "RestoreResult",
    "SizeMeasurement",
    "StorageCheckOptions",
    "StorageCheckResult",
    "StorageInfo",
    "StorageStatus",
    "TableRestoreDetail",
    "TableSize",
]
