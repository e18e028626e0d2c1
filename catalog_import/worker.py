"""arq worker configuration for catalog import tasks.

This module configures the arq worker with:
    - process_import_task: Import an uploaded catalog feed for a job
    - storage_check_task: Hourly storage quota check (cron)
    - cleanup_uploads_task: Remove stale uploads (cron)

Run with: `arq catalog_import.worker.WorkerSettings`
"""
from arq.connections import RedisSettings
from arq import cron
from typing import Dict, Any
import structlog

from catalog_import.config import settings, import_settings, storage_settings, configure_logging
from catalog_import.db.base import engine
from catalog_import.db.storage_backend import PostgresStorageBackend
from catalog_import.services.import_pipeline import ImportPipeline
from catalog_import.services.import_service import ImportService
from catalog_import.services.job_manager import JobLifecycleManager
from catalog_import.services.job_store import RedisJobStore
from catalog_import.services.storage_guard import StorageQuotaGuard
from catalog_import.tasks.import_tasks import process_import_task, storage_check_task
from catalog_import.tasks.cleanup_tasks import cleanup_uploads_task

# Configure logging
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)


async def startup(ctx: Dict[str, Any]) -> None:
    """Build the import service on the worker's Redis connection.

    Job state lives in Redis so API instances see the worker's progress and
    can cancel its jobs.
    """
    store = RedisJobStore(ctx["redis"], terminal_ttl_seconds=import_settings.job_retention_seconds)
    manager = JobLifecycleManager(store, import_settings.job_retention_seconds)
    guard = StorageQuotaGuard(PostgresStorageBackend(engine), storage_settings)

    ctx["storage_guard"] = guard
    ctx["import_service"] = ImportService(manager, ImportPipeline(manager, guard, config=import_settings))
    logger.info("worker_started", queue_name=settings.queue_name, max_jobs=settings.max_workers)


async def shutdown(ctx: Dict[str, Any]) -> None:
    """Release background state and database connections."""
    service: ImportService = ctx.get("import_service")
    if service is not None:
        await service.shutdown()
    await engine.dispose()
    logger.info("worker_stopped")


async def on_job_end(ctx: Dict[str, Any]) -> None:
    """Hook called after each job ends (success or failure)."""
    job_result = ctx.get("job_result")
    if isinstance(job_result, Exception):
        logger.warning(
            "worker_job_failed",
            job_id=ctx.get("job_id", "unknown"),
            job_try=ctx.get("job_try", 1),
            error=str(job_result),
        )
    else:
        logger.debug("worker_job_ended", job_id=ctx.get("job_id", "unknown"))


class WorkerSettings:
    """arq worker configuration settings.

    Registered Tasks:
        - process_import_task: Import a feed file for a job
        - storage_check_task: Storage quota check
        - cleanup_uploads_task: Delete uploads older than UPLOAD_TTL_HOURS

    Cron Jobs:
        - storage_check_task: Hourly
        - cleanup_uploads_task: Every 6 hours
    """

    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_name
    max_jobs = settings.max_workers
    job_timeout = settings.job_timeout
    keep_result = 3600  # Keep results for 1 hour
    # Imports are not retried
    max_tries = 1

    functions = [
        process_import_task,
        storage_check_task,
        cleanup_uploads_task,
    ]

    on_startup = startup
    on_shutdown = shutdown
    on_job_end = on_job_end

    cron_jobs = [
        cron(storage_check_task, minute=0, unique=True, run_at_startup=False),
        cron(cleanup_uploads_task, hour={0, 6, 12, 18}, minute=30, unique=True),
    ]
