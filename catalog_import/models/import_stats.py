"""Import statistics and structured error entries."""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Error taxonomy surfaced on job results."""
    STRUCTURAL_PARSE = "structural_parse"
    RECORD_TRANSFORM = "record_transform"
    REFERENCE_UNRESOLVED = "reference_unresolved"
    BATCH_WRITE = "batch_write"
    TRANSACTION_FATAL = "transaction_fatal"
    STORAGE_BLOCKED = "storage_blocked"
    CANCELLED = "cancelled"


class ErrorEntry(BaseModel):
    """One structured error, small enough to ship on a job status."""

    kind: ErrorKind
    entity_type: Optional[str] = None
    identifier: Optional[str] = None
    message: str


class EntityStats(BaseModel):
    """Counters for a single entity type."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class ImportStats(BaseModel):
    """Statistics for one persistence run.

    ``errors`` keeps the first ``max_error_entries`` entries only; the
    ``error_counts`` totals are never capped.
    """

    entities: Dict[str, EntityStats] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    rows_per_second: float = 0.0
    errors: List[ErrorEntry] = Field(default_factory=list)
    error_counts: Dict[str, int] = Field(default_factory=dict)
    truncated_errors: int = 0
    max_error_entries: int = 100

    def for_type(self, entity_type: str) -> EntityStats:
        """Get (or create) the counters for an entity type."""
        if entity_type not in self.entities:
            self.entities[entity_type] = EntityStats()
        return self.entities[entity_type]

    def record_error(self, entry: ErrorEntry) -> None:
        """Add an error entry, respecting the bounded list."""
        key = entry.kind.value
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        if len(self.errors) < self.max_error_entries:
            self.errors.append(entry)
        else:
            self.truncated_errors += 1

    def start(self) -> None:
        self.started_at = datetime.now(timezone.utc)

    def finish(self) -> None:
        """Stamp end time and derive elapsed time and throughput."""
        self.finished_at = datetime.now(timezone.utc)
        if self.started_at is not None:
            self.elapsed_seconds = (self.finished_at - self.started_at).total_seconds()
        written = self.total_created() + self.total_updated()
        if self.elapsed_seconds > 0:
            self.rows_per_second = round(written / self.elapsed_seconds, 2)

    def created_counts(self) -> Dict[str, int]:
        return {name: s.created for name, s in self.entities.items()}

    def total_created(self) -> int:
        return sum(s.created for s in self.entities.values())

    def total_updated(self) -> int:
        return sum(s.updated for s in self.entities.values())

    def total_skipped(self) -> int:
        return sum(s.skipped for s in self.entities.values())

    def total_errors(self) -> int:
        return sum(s.errors for s in self.entities.values())
