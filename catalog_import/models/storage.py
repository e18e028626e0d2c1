"""Pydantic models for storage measurement, cleanup and backup."""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from catalog_import.config import StorageSettings

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024


class StorageStatus(str, Enum):
    """Database size classification against the capacity ceiling."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class TableSize(BaseModel):
    table_name: str
    total_bytes: int


class SizeMeasurement(BaseModel):
    """Raw measurement returned by a storage backend."""

    size_bytes: int = Field(..., ge=0)
    largest_tables: List[TableSize] = Field(default_factory=list)


class StorageInfo(BaseModel):
    """Classified storage report."""

    size_bytes: int
    capacity_bytes: int
    percent_of_limit: float
    status: StorageStatus
    largest_tables: List[TableSize] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size_mb(self) -> float:
        return self.size_bytes / BYTES_PER_MB

    @property
    def size_gb(self) -> float:
        return self.size_bytes / BYTES_PER_GB


class CleanupOptions(BaseModel):
    """Options for one cleanup pass.

    Defaults mirror the light (warning-level) cleanup profile.
    """

    keep_product_count: int = Field(default=200, ge=0)
    retention_days: int = Field(default=30, ge=0)
    purge_images: bool = True
    truncate_descriptions: bool = False
    max_description_length: int = Field(default=200, ge=10)
    vacuum_after_cleanup: bool = True
    backup_before_cleanup: bool = True
    backup_tables: List[str] = Field(
        default_factory=lambda: ["categories", "producers", "units"]
    )
    # Prices/stocks of products inside the keep set survive the age-based purge
    exempt_retained_children: bool = True


class CleanupResult(BaseModel):
    """Outcome of a cleanup pass."""

    initial_bytes: int
    final_bytes: int
    bytes_freed: int
    percent_reduction: float
    duration_seconds: float
    rows_deleted: Dict[str, int] = Field(default_factory=dict)
    descriptions_truncated: int = 0
    backup_path: Optional[str] = None
    vacuumed: bool = False
    options: CleanupOptions

    @property
    def mb_freed(self) -> float:
        return self.bytes_freed / BYTES_PER_MB


class StorageCheckOptions(BaseModel):
    """Options for the pre-import storage check."""

    warning_threshold_percent: float = 80.0
    critical_threshold_percent: float = 95.0
    auto_cleanup_on_warning: bool = False
    auto_cleanup_on_critical: bool = True
    prevent_import_on_critical: bool = True
    backup_before_cleanup: bool = True
    backup_tables: List[str] = Field(
        default_factory=lambda: ["categories", "producers", "units"]
    )
    critical_keep_products: int = 100
    warning_keep_products: int = 200
    retention_days: int = 30
    cleanup_description_length: int = 200

    @classmethod
    def from_settings(cls, storage: StorageSettings) -> "StorageCheckOptions":
        """Build check options from STORAGE_* settings."""
        return cls(
            warning_threshold_percent=storage.warning_threshold_percent,
            critical_threshold_percent=storage.critical_threshold_percent,
            auto_cleanup_on_warning=storage.auto_cleanup_on_warning,
            auto_cleanup_on_critical=storage.auto_cleanup_on_critical,
            prevent_import_on_critical=storage.prevent_import_on_critical,
            backup_before_cleanup=storage.backup_before_cleanup,
            backup_tables=list(storage.backup_tables),
            critical_keep_products=storage.critical_keep_products,
            warning_keep_products=storage.warning_keep_products,
            retention_days=storage.retention_days,
            cleanup_description_length=storage.cleanup_description_length,
        )


class StorageCheckResult(BaseModel):
    """Decision of the storage guard.

    ``blocked`` is the structured refusal to start an import; it is the only
    case where ``can_proceed`` is False.
    """

    can_proceed: bool
    status: Optional[StorageStatus] = None
    cleanup_performed: bool = False
    blocked: bool = False
    message: str = ""
    report: Optional[StorageInfo] = None
    cleanup: Optional[CleanupResult] = None
    error: Optional[str] = None


class TableRestoreDetail(BaseModel):
    total: int
    inserted: int


class RestoreResult(BaseModel):
    """Outcome of restoring a backup artifact."""

    backup_path: str
    tables_restored: int = 0
    records_restored: int = 0
    details: Dict[str, TableRestoreDetail] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeletionReport(BaseModel):
    """Rows removed by one cleanup transaction."""

    rows_deleted: Dict[str, int] = Field(default_factory=dict)
    descriptions_truncated: int = 0
    retained_products: int = 0
