"""Import job model and status transitions."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from catalog_import.models.import_stats import ErrorEntry


class JobStatus(str, Enum):
    """Import job lifecycle states."""
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({JobStatus.CREATED, JobStatus.PROCESSING})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportJob(BaseModel):
    """
    Import job state as exposed to pollers.

    Attributes:
        id: Opaque job identifier
        status: Current lifecycle state
        progress: Completion percentage (0-100)
        stage: Human-readable name of the current pipeline phase
        created_at: Job creation time
        updated_at: Last status change
        completed_at: Time the job reached a terminal state
        error: Failure message for failed jobs
        errors: Bounded list of structured error entries
        error_counts: Error totals per kind
        result: Import statistics for completed jobs
        metadata: Caller-supplied metadata (filename, size, uploader...)
        committing: Set once the import transaction starts committing; the
            job can no longer be cancelled
    """

    id: str
    status: JobStatus = JobStatus.CREATED
    progress: int = Field(default=0, ge=0, le=100)
    stage: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    errors: List[ErrorEntry] = Field(default_factory=list)
    error_counts: Dict[str, int] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    committing: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE_STATUSES and not self.committing

    def to_json(self) -> str:
        """Serialize to JSON string for Redis storage."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ImportJob":
        """Deserialize from JSON string."""
        return cls.model_validate_json(data)


class JobFilter(BaseModel):
    """Filter for listing jobs."""

    status: Optional[JobStatus] = None
    limit: Optional[int] = Field(default=None, ge=1)

    def matches(self, job: ImportJob) -> bool:
        return self.status is None or job.status == self.status
