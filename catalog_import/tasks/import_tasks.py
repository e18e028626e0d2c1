"""
Import Tasks

Out-of-process imports: the HTTP layer stores the uploaded feed in the
uploads directory, creates the job in the shared (Redis) job store and
enqueues ``process_import_task`` with the job id and file path.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from catalog_import.errors.exceptions import JobStateError
from catalog_import.models.job import JobStatus
from catalog_import.services.import_pipeline import ImportOptions
from catalog_import.services.import_service import ImportService
from catalog_import.services.storage_guard import StorageQuotaGuard

logger = structlog.get_logger(__name__)


def _read_feed(file_path: Path) -> bytes:
    return file_path.read_bytes()


async def process_import_task(
    ctx: Dict[str, Any],
    job_id: str,
    file_path: str,
    options: Optional[Dict[str, Any]] = None,
    delete_after: bool = True,
    **kwargs,
) -> Dict[str, Any]:
    """
    Import a catalog feed file for a job.

    Args:
        ctx: Worker context (holds ``import_service``)
        job_id: Job id; the job is created here if the caller did not
        file_path: Path of the uploaded feed
        options: ImportOptions fields
        delete_after: Remove the upload once the job reaches a final state

    Returns:
        Dict with job_id, status and progress
    """
    log = logger.bind(job_id=job_id, file_path=file_path)
    service: ImportService = ctx["import_service"]
    path = Path(file_path)

    if await service.get_job(job_id) is None:
        try:
            await service.manager.create_job(job_id, {"file_path": file_path, "filename": path.name})
        except JobStateError:
            # Created concurrently by the API instance
            log.debug("import_job_already_created")

    try:
        raw = await asyncio.to_thread(_read_feed, path)
    except OSError as e:
        log.error("import_file_read_failed", error=str(e))
        try:
            await service.manager.update_status(
                job_id, JobStatus.FAILED, stage="failed", error=f"Cannot read feed file: {e}"
            )
        except JobStateError as state_error:
            log.warning("job_final_status_rejected", error=state_error.message)
        return {"job_id": job_id, "status": JobStatus.FAILED.value, "progress": 0}

    import_options = ImportOptions(**options) if options else None
    log.info("import_task_started", size_bytes=len(raw))
    job = await service.run_import(job_id, raw, import_options)

    if delete_after:
        try:
            path.unlink(missing_ok=True)
            log.debug("import_file_deleted")
        except OSError as e:
            log.warning("import_file_delete_failed", error=str(e))

    status = job.status.value if job else "unknown"
    log.info("import_task_finished", status=status)
    return {
        "job_id": job_id,
        "status": status,
        "progress": job.progress if job else 0,
    }


async def storage_check_task(ctx: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """
    Periodic storage check (cron, hourly).

    Runs the same threshold logic as the pre-import check so cleanup can
    happen before the next upload arrives.
    """
    guard: StorageQuotaGuard = ctx["storage_guard"]
    result = await guard.check_and_manage_storage()
    logger.info(
        "scheduled_storage_check",
        status=result.status.value if result.status else None,
        can_proceed=result.can_proceed,
        cleanup_performed=result.cleanup_performed,
        error=result.error,
    )
    return result.model_dump(mode="json", exclude={"report"})
