"""
Job Lifecycle Manager

Owns import job state transitions, per-job cancellation tokens, per-job
observers and the retention timers that expire finished jobs.

State machine:
    created → processing → completed | failed | cancelled
    created → cancelled | failed

Terminal states are final. Only created/processing jobs can be cancelled,
and a processing job stops being cancellable once its transaction starts
committing (see :meth:`JobLifecycleManager.begin_commit`).
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from catalog_import.config import import_settings
from catalog_import.errors.exceptions import ImportCancelledError, JobNotFoundError, JobStateError
from catalog_import.models.import_stats import ErrorEntry
from catalog_import.models.job import ImportJob, JobFilter, JobStatus
from catalog_import.services.cancellation import CancellationToken
from catalog_import.services.job_store import InMemoryJobStore, JobStore

logger = structlog.get_logger(__name__)

JobListener = Callable[[ImportJob], Any]
Unsubscribe = Callable[[], None]

ALLOWED_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.CREATED: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
}


def _check_transition(job: ImportJob, status: JobStatus, required: Optional[JobStatus] = None) -> None:
    """Raise JobStateError unless ``job`` may move to ``status``."""
    if required is not None and job.status != required:
        raise JobStateError(
            f"Job {job.id} is {job.status.value}, not {required.value}",
            {"job_id": job.id, "status": job.status.value},
        )
    if status not in ALLOWED_TRANSITIONS.get(job.status, set()):
        raise JobStateError(
            f"Cannot move job {job.id} from {job.status.value} to {status.value}",
            {"job_id": job.id, "from": job.status.value, "to": status.value},
        )
    if status == JobStatus.CANCELLED and job.committing:
        raise JobStateError(
            f"Job {job.id} is committing and can no longer be cancelled",
            {"job_id": job.id, "status": job.status.value},
        )


@dataclass
class _JobObservers:
    on_update: List[JobListener] = field(default_factory=list)
    on_cancel: List[JobListener] = field(default_factory=list)


class JobLifecycleManager:
    """Job state owner for one process.

    The store may be shared (Redis); tokens, observers and timers are local
    to the instance that runs the job.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        retention_seconds: Optional[float] = None,
    ) -> None:
        self._store = store or InMemoryJobStore()
        self._retention_seconds = (
            retention_seconds if retention_seconds is not None
            else import_settings.job_retention_seconds
        )
        self._tokens: Dict[str, CancellationToken] = {}
        self._observers: Dict[str, _JobObservers] = {}
        self._global_listeners: List[JobListener] = []
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._expiry_tasks: Set[asyncio.Task] = set()

    @property
    def store(self) -> JobStore:
        return self._store

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_job(
        self,
        job_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ImportJob:
        """Create a job in ``created`` state.

        Raises:
            JobStateError: If ``job_id`` is already in use
        """
        job = ImportJob(id=job_id or str(uuid.uuid4()), metadata=metadata or {})
        await self._store.add(job)
        self._tokens[job.id] = CancellationToken(job.id)

        logger.info("import_job_created", job_id=job.id, metadata=job.metadata)
        await self._notify(job)
        return job

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: Optional[int] = None,
        stage: Optional[str] = None,
        error: Optional[str] = None,
        errors: Optional[List[ErrorEntry]] = None,
        error_counts: Optional[Dict[str, int]] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> ImportJob:
        """Move a job to ``status`` and merge the extra fields.

        The check and the write are one atomic store transition, so two
        instances sharing the store cannot both move the same job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the transition is not allowed
        """
        return await self._transition(
            job_id,
            status,
            progress=progress,
            stage=stage,
            error=error,
            errors=errors,
            error_counts=error_counts,
            result=result,
        )

    async def report_progress(self, job_id: str, progress: int, stage: Optional[str] = None) -> Optional[ImportJob]:
        """Progress update for a processing job.

        Returns None instead of raising when the job already left
        ``processing`` (e.g. it was cancelled while a chunk was running).
        A cancellation recorded by another instance sharing the store is
        forwarded to the local token here.
        """
        try:
            return await self._transition(
                job_id, JobStatus.PROCESSING, required=JobStatus.PROCESSING, progress=progress, stage=stage
            )
        except JobNotFoundError:
            return None
        except JobStateError:
            job = await self._store.get(job_id)
            if job is not None and job.status == JobStatus.CANCELLED:
                self._trip_token(job_id)
            return None

    async def begin_commit(self, job_id: str) -> ImportJob:
        """Mark a processing job as committing.

        This is the last cancellation checkpoint of a run: once it returns,
        :meth:`cancel` refuses the job and the transaction may commit.

        Raises:
            ImportCancelledError: If the job was cancelled before this point
        """
        self.get_token(job_id).raise_if_cancelled()
        try:
            return await self._transition(
                job_id,
                JobStatus.PROCESSING,
                required=JobStatus.PROCESSING,
                stage="committing",
                committing=True,
            )
        except JobStateError:
            job = await self._store.get(job_id)
            if job is not None and job.status == JobStatus.CANCELLED:
                self._trip_token(job_id)
                raise ImportCancelledError(job_id)
            raise

    async def cancel(self, job_id: str) -> ImportJob:
        """Request cooperative cancellation of a job.

        The job becomes ``cancelled`` immediately; the running pipeline
        observes the token at its next checkpoint and rolls back.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is not created/processing, or its
                transaction is already committing
        """
        token = self._tokens.get(job_id)
        observers = self._observers.get(job_id)
        job = await self._transition(job_id, JobStatus.CANCELLED, stage="cancelled")
        if token is not None:
            token.cancel()
        logger.info("import_job_cancelled", job_id=job_id)

        if observers is not None:
            for listener in list(observers.on_cancel):
                await self._call(listener, job)
        return job

    async def get_job(self, job_id: str) -> Optional[ImportJob]:
        return await self._store.get(job_id)

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[ImportJob]:
        return await self._store.list(job_filter)

    def get_token(self, job_id: str) -> CancellationToken:
        """Cancellation token for a job, created on first use."""
        token = self._tokens.get(job_id)
        if token is None:
            token = CancellationToken(job_id)
            self._tokens[job_id] = token
        return token

    async def remove_job(self, job_id: str) -> bool:
        """Drop a job and everything attached to it."""
        handle = self._expiry_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self._tokens.pop(job_id, None)
        self._observers.pop(job_id, None)
        removed = await self._store.delete(job_id)
        if removed:
            logger.debug("import_job_expired", job_id=job_id)
        return removed

    async def shutdown(self) -> None:
        """Cancel pending expiry timers."""
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        for task in list(self._expiry_tasks):
            task.cancel()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(
        self,
        job_id: str,
        on_update: Optional[JobListener] = None,
        on_cancel: Optional[JobListener] = None,
    ) -> Unsubscribe:
        """Observe one job. Call the returned function to unsubscribe."""
        observers = self._observers.setdefault(job_id, _JobObservers())
        if on_update is not None:
            observers.on_update.append(on_update)
        if on_cancel is not None:
            observers.on_cancel.append(on_cancel)

        def unsubscribe() -> None:
            current = self._observers.get(job_id)
            if current is None:
                return
            if on_update is not None and on_update in current.on_update:
                current.on_update.remove(on_update)
            if on_cancel is not None and on_cancel in current.on_cancel:
                current.on_cancel.remove(on_cancel)
            if not current.on_update and not current.on_cancel:
                self._observers.pop(job_id, None)

        return unsubscribe

    def subscribe_all(self, listener: JobListener) -> Unsubscribe:
        """Observe every job update."""
        self._global_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._global_listeners:
                self._global_listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # Internals
    # =========================================================================

    async def _transition(
        self,
        job_id: str,
        status: JobStatus,
        required: Optional[JobStatus] = None,
        progress: Optional[int] = None,
        stage: Optional[str] = None,
        error: Optional[str] = None,
        errors: Optional[List[ErrorEntry]] = None,
        error_counts: Optional[Dict[str, int]] = None,
        result: Optional[Dict[str, Any]] = None,
        committing: Optional[bool] = None,
    ) -> ImportJob:
        def apply(job: ImportJob) -> None:
            _check_transition(job, status, required)
            now = datetime.now(timezone.utc)
            job.status = status
            job.updated_at = now
            if progress is not None:
                job.progress = max(0, min(100, int(progress)))
            if stage is not None:
                job.stage = stage
            if error is not None:
                job.error = error
            if errors is not None:
                job.errors = list(errors)
            if error_counts is not None:
                job.error_counts = dict(error_counts)
            if result is not None:
                job.result = result
            if committing is not None:
                job.committing = committing

            if job.is_terminal:
                job.completed_at = now
                job.committing = False
                if status == JobStatus.COMPLETED:
                    job.progress = 100

        job = await self._store.transition(job_id, apply)

        if job.is_terminal:
            self._finalize(job)
            logger.info(
                "import_job_finished",
                job_id=job_id,
                status=status.value,
                error=job.error,
            )

        await self._notify(job)
        return job

    def _trip_token(self, job_id: str) -> None:
        """Forward a cancellation recorded by another instance."""
        token = self._tokens.pop(job_id, None)
        if token is not None:
            token.cancel()
            logger.info("import_job_cancelled_remotely", job_id=job_id)

    def _finalize(self, job: ImportJob) -> None:
        """Release the token and schedule removal of a finished job."""
        self._tokens.pop(job.id, None)
        if job.id in self._expiry_handles:
            return
        loop = asyncio.get_running_loop()
        self._expiry_handles[job.id] = loop.call_later(
            self._retention_seconds, self._expire, job.id
        )

    def _expire(self, job_id: str) -> None:
        self._expiry_handles.pop(job_id, None)
        task = asyncio.get_running_loop().create_task(self.remove_job(job_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _notify(self, job: ImportJob) -> None:
        observers = self._observers.get(job.id)
        listeners = list(self._global_listeners)
        if observers is not None:
            listeners.extend(observers.on_update)
        for listener in listeners:
            await self._call(listener, job)

    async def _call(self, listener: JobListener, job: ImportJob) -> None:
        try:
            outcome = listener(job.model_copy(deep=True))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "job_listener_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
            )
