#!/usr/bin/env python3
"""Import a catalog feed file, in-process or through the worker queue.

Usage:
    # Run the import here and print the final job
    python scripts/import_feed.py feeds/geko.xml

    # Hand the file to the arq worker
    python scripts/import_feed.py /uploads/geko.xml --enqueue
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional
from uuid import uuid4

# Add project root to path
script_dir = Path(__file__).parent
project_root = script_dir.parent
sys.path.insert(0, str(project_root))

from arq import ArqRedis
from arq.connections import RedisSettings, create_pool

from catalog_import.config import settings, import_settings, configure_logging
from catalog_import.db.base import engine
from catalog_import.models.job import JobStatus
from catalog_import.services.import_pipeline import ImportOptions
from catalog_import.services.import_service import build_import_service


async def run_local(path: Path, options: ImportOptions, job_id: Optional[str] = None) -> int:
    """Run the import in this process and print the final job."""
    service = build_import_service()
    try:
        raw = await asyncio.to_thread(path.read_bytes)
        job_id = await service.submit_import(
            raw,
            metadata={"filename": path.name, "source": "cli"},
            options=options,
            job_id=job_id,
        )
        print(f"📥 Import started: {job_id}")
        job = await service.wait_for(job_id)
    finally:
        await service.shutdown()
        await engine.dispose()

    print(json.dumps(job.model_dump(mode="json"), indent=2))
    return 0 if job.status == JobStatus.COMPLETED else 1


async def enqueue(path: Path, job_id: str, options: ImportOptions) -> int:
    """Enqueue a process_import_task for the worker."""
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    pool: ArqRedis = await create_pool(redis_settings)
    try:
        job = await pool.enqueue_job(
            "process_import_task",
            job_id=job_id,
            file_path=str(path),
            options=options.model_dump(),
            delete_after=False,
            _queue_name=settings.queue_name,
        )
    finally:
        await pool.close()

    print("✅ Task enqueued successfully!")
    print(f"   Job ID:  {job_id}")
    print(f"   Queue:   {settings.queue_name}")
    print(f"   arq job: {job.job_id if job else 'duplicate'}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Import a supplier catalog XML feed")
    parser.add_argument("file", help="Path of the XML feed")
    parser.add_argument("--enqueue", action="store_true", help="Send to the worker queue instead of running here")
    parser.add_argument("--job-id", help="Job id (auto-generated if not provided)")
    parser.add_argument("--batch-size", type=int, default=import_settings.batch_size)
    parser.add_argument("--skip-images", action="store_true")
    parser.add_argument("--no-update", action="store_true", help="Skip rows that already exist")
    parser.add_argument("--no-storage-check", action="store_true")

    args = parser.parse_args()
    configure_logging(settings.log_level)

    path = Path(args.file)
    if not path.is_file():
        print(f"❌ File not found: {path}", file=sys.stderr)
        sys.exit(1)

    options = ImportOptions(
        batch_size=args.batch_size,
        update_existing=not args.no_update,
        skip_images=args.skip_images or import_settings.skip_images,
        max_error_entries=import_settings.max_error_entries,
        check_storage=not args.no_storage_check,
    )

    if args.enqueue:
        sys.exit(asyncio.run(enqueue(path, args.job_id or str(uuid4()), options)))
    sys.exit(asyncio.run(run_local(path, options, args.job_id)))


if __name__ == "__main__":
    main()
