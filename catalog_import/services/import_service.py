"""Import submission surface.

Fire-and-forget entry point used by the HTTP layer: ``submit_import``
creates a job, schedules the pipeline as a background task and returns the
job id immediately. Callers poll ``get_job``.
"""
import asyncio
from typing import Any, Dict, List, Optional, Set, Union

import redis.asyncio as aioredis
import structlog

from catalog_import.config import ImportSettings, Settings, StorageSettings, import_settings, settings, storage_settings
from catalog_import.db.base import engine
from catalog_import.db.storage_backend import PostgresStorageBackend
from catalog_import.errors.exceptions import CatalogImportError
from catalog_import.models.job import ImportJob, JobFilter, JobStatus
from catalog_import.services.import_pipeline import ImportOptions, ImportPipeline
from catalog_import.services.job_manager import JobLifecycleManager, JobListener, Unsubscribe
from catalog_import.services.job_store import InMemoryJobStore, JobStore, RedisJobStore
from catalog_import.services.storage_guard import StorageQuotaGuard

logger = structlog.get_logger(__name__)


class ImportService:
    """Submit, query and cancel catalog imports."""

    def __init__(self, manager: JobLifecycleManager, pipeline: ImportPipeline) -> None:
        self._manager = manager
        self._pipeline = pipeline
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def manager(self) -> JobLifecycleManager:
        return self._manager

    async def submit_import(
        self,
        raw: Union[bytes, str],
        metadata: Optional[Dict[str, Any]] = None,
        options: Optional[ImportOptions] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Create a job and start its import in the background.

        Args:
            raw: Feed document
            metadata: Caller metadata stored on the job (filename, size...)
            options: Import options; defaults from IMPORT_* settings
            job_id: Explicit job id; generated when omitted

        Returns:
            The job id

        Raises:
            JobStateError: If ``job_id`` is already in use
        """
        metadata = dict(metadata or {})
        metadata.setdefault("size_bytes", len(raw))
        job = await self._manager.create_job(job_id, metadata)

        task = asyncio.create_task(
            self._pipeline.run(job.id, raw, options),
            name=f"catalog-import-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info("import_submitted", job_id=job.id, size_bytes=metadata["size_bytes"])
        return job.id

    async def run_import(
        self,
        job_id: str,
        raw: Union[bytes, str],
        options: Optional[ImportOptions] = None,
    ) -> Optional[ImportJob]:
        """Run the import for an existing job in the current task and return the final job."""
        await self._pipeline.run(job_id, raw, options)
        return await self._manager.get_job(job_id)

    async def get_job(self, job_id: str) -> Optional[ImportJob]:
        return await self._manager.get_job(job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ImportJob]:
        return await self._manager.list_jobs(JobFilter(status=status, limit=limit))

    async def cancel_job(self, job_id: str) -> ImportJob:
        """Cancel a created or processing job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job already finished
        """
        return await self._manager.cancel(job_id)

    def subscribe(
        self,
        job_id: str,
        on_update: Optional[JobListener] = None,
        on_cancel: Optional[JobListener] = None,
    ) -> Unsubscribe:
        return self._manager.subscribe(job_id, on_update=on_update, on_cancel=on_cancel)

    async def wait_for(self, job_id: str) -> Optional[ImportJob]:
        """Wait for a job's background task (if running here) and return the job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self._manager.get_job(job_id)

    def running_jobs(self) -> Set[str]:
        return set(self._tasks)

    async def shutdown(self) -> None:
        """Cancel outstanding background tasks and expiry timers."""
        for job_id in list(self._tasks):
            try:
                await self._manager.cancel(job_id)
            except CatalogImportError as e:
                logger.warning("import_cancel_on_shutdown_failed", job_id=job_id, error=e.message)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self._manager.shutdown()


def build_job_store(
    config: Optional[ImportSettings] = None,
    app_settings: Optional[Settings] = None,
) -> JobStore:
    """Job store selected by IMPORT_JOB_STORE."""
    config = config or import_settings
    app_settings = app_settings or settings
    if config.job_store == "redis":
        client = aioredis.from_url(app_settings.redis_url)
        return RedisJobStore(client, terminal_ttl_seconds=config.job_retention_seconds)
    return InMemoryJobStore()


def build_import_service(
    config: Optional[ImportSettings] = None,
    storage_config: Optional[StorageSettings] = None,
    store: Optional[JobStore] = None,
) -> ImportService:
    """Wire the production service: Postgres repository and storage guard."""
    config = config or import_settings
    manager = JobLifecycleManager(store or build_job_store(config), config.job_retention_seconds)
    guard = StorageQuotaGuard(PostgresStorageBackend(engine), storage_config or storage_settings)
    return ImportService(manager, ImportPipeline(manager, guard, config=config))
