"""Custom exception hierarchy for catalog import errors."""
from typing import Any, Dict, Optional


class CatalogImportError(Exception):
    """Base exception for all catalog import errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Initialize error with message and optional structured details."""
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StructuralParseError(CatalogImportError):
    """Raised when the feed document is unusable as a whole.

    Covers unparsable bytes and documents whose root matches neither
    supported catalog shape.
    """
    pass


class RecordTransformError(CatalogImportError):
    """Raised when a single product record cannot be transformed.

    The parser catches it, records it and continues with the next product.
    """

    def __init__(
        self,
        message: str,
        product_code: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        super().__init__(message, {"product_code": product_code, "index": index})
        self.product_code = product_code
        self.index = index


class BatchWriteError(CatalogImportError):
    """Raised when one chunk of rows fails to persist.

    Sibling chunks and later entity types still run.
    """

    def __init__(
        self,
        message: str,
        entity_type: str,
        chunk_index: int,
        row_count: int,
    ) -> None:
        super().__init__(
            message,
            {"entity_type": entity_type, "chunk_index": chunk_index, "row_count": row_count},
        )
        self.entity_type = entity_type
        self.chunk_index = chunk_index
        self.row_count = row_count


class TransactionFatalError(CatalogImportError):
    """Raised when the transaction or the connection is lost.

    Propagates to the pipeline, which rolls back the whole run.
    """
    pass


class ImportCancelledError(CatalogImportError):
    """Raised at a suspension point once a job's cancellation is observed."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Import job {job_id} was cancelled", {"job_id": job_id})
        self.job_id = job_id


class JobNotFoundError(CatalogImportError):
    """Raised when a job id is unknown to the job store."""
    pass


class JobStateError(CatalogImportError):
    """Raised on duplicate job ids and illegal status transitions."""
    pass


class StorageError(CatalogImportError):
    """Raised when measuring, cleaning, backing up or restoring storage fails."""
    pass
