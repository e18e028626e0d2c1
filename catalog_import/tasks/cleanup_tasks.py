"""
Upload Cleanup Tasks

Removes feed uploads that outlived ``upload_ttl_hours`` (for example
files whose import task never ran). Successful imports delete their own
upload.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from catalog_import.config import settings

logger = structlog.get_logger(__name__)

FEED_SUFFIXES = {".xml", ".gz", ".tmp"}


def _get_file_age_hours(file_path: Path) -> float:
    """Age of a file in hours, from its modification time."""
    try:
        mtime = file_path.stat().st_mtime
        age_seconds = datetime.now(timezone.utc).timestamp() - mtime
        return age_seconds / 3600
    except OSError:
        return 0.0


def find_expired_uploads(directory: Path, ttl_hours: int, log: Any) -> List[Path]:
    """
    Find feed uploads older than the TTL.

    Args:
        directory: Uploads directory
        ttl_hours: Time-to-live in hours
        log: Logger instance

    Returns:
        Expired file paths
    """
    expired: List[Path] = []

    if not directory.exists():
        log.warning("cleanup_directory_not_found", path=str(directory))
        return expired

    try:
        for entry in directory.iterdir():
            if not entry.is_file() or entry.suffix.lower() not in FEED_SUFFIXES:
                continue
            age_hours = _get_file_age_hours(entry)
            if age_hours >= ttl_hours:
                expired.append(entry)
                log.debug("file_expired", path=str(entry), age_hours=round(age_hours, 2))
    except OSError as e:
        log.error("cleanup_scan_error", directory=str(directory), error=str(e))

    return expired


async def cleanup_uploads_task(
    ctx: Dict[str, Any],
    ttl_hours: Optional[int] = None,
    dry_run: bool = False,
    uploads_dir: Optional[str] = None,
    **kwargs,
) -> Dict[str, Any]:
    """
    Delete expired feed uploads.

    Args:
        ctx: Worker context
        ttl_hours: Override for settings.upload_ttl_hours
        dry_run: Only report what would be deleted
        uploads_dir: Override for settings.uploads_dir

    Returns:
        Dict with files_found, files_deleted, bytes_freed and errors
    """
    log = logger.bind(task="cleanup_uploads")
    directory = Path(uploads_dir or settings.uploads_dir)
    cleanup_ttl = ttl_hours or settings.upload_ttl_hours

    log.info("cleanup_started", directory=str(directory), ttl_hours=cleanup_ttl, dry_run=dry_run)

    result: Dict[str, Any] = {
        "files_found": 0,
        "files_deleted": 0,
        "bytes_freed": 0,
        "errors": [],
    }

    expired_files = find_expired_uploads(directory, cleanup_ttl, log)
    result["files_found"] = len(expired_files)
    if not expired_files:
        log.info("cleanup_no_expired_files")
        return result

    for file_path in expired_files:
        try:
            size = file_path.stat().st_size
            if dry_run:
                log.info("would_delete_file", path=str(file_path), size_bytes=size)
                continue
            file_path.unlink()
            result["files_deleted"] += 1
            result["bytes_freed"] += size
        except OSError as e:
            result["errors"].append(f"Failed to delete {file_path.name}: {e}")
            log.warning("cleanup_file_error", path=str(file_path), error=str(e))

    log.info(
        "cleanup_complete",
        files_found=result["files_found"],
        files_deleted=result["files_deleted"],
        bytes_freed_mb=round(result["bytes_freed"] / (1024 * 1024), 2),
        errors_count=len(result["errors"]),
        dry_run=dry_run,
    )
    return result
