"""Error handling module."""
from catalog_import.errors.exceptions import (
    CatalogImportError,
    StructuralParseError,
    RecordTransformError,
    BatchWriteError,
    TransactionFatalError,
    ImportCancelledError,
    JobNotFoundError,
    JobStateError,
    StorageError,
)

__all__ = [
    "CatalogImportError",
    "StructuralParseError",
    "RecordTransformError",
    "BatchWriteError",
    "TransactionFatalError",
    "ImportCancelledError",
    "JobNotFoundError",
    "JobStateError",
    "StorageError",
]
