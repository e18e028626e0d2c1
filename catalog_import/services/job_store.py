"""
Job Store

Storage backends for import job state.

- InMemoryJobStore: single-process deployments and tests
- RedisJobStore: shared state for several API/worker instances

Both enforce unique job ids and return copies, so callers never mutate
stored state behind the store's back. State changes go through
:meth:`JobStore.transition`, which reads, checks and writes a job as one
atomic step.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError

from catalog_import.errors.exceptions import JobNotFoundError, JobStateError
from catalog_import.models.job import ImportJob, JobFilter

logger = structlog.get_logger(__name__)

JobMutation = Callable[[ImportJob], None]

# =============================================================================
# Redis Key Constants
# =============================================================================

JOB_KEY_PREFIX = "catalog-import:job:"
JOB_INDEX_KEY = "catalog-import:jobs"
ACTIVE_JOB_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days


def _job_key(job_id: str) -> str:
    """Get Redis key for a job."""
    return f"{JOB_KEY_PREFIX}{job_id}"


def _apply_filter(jobs: List[ImportJob], job_filter: Optional[JobFilter]) -> List[ImportJob]:
    """Filter and order jobs newest first."""
    job_filter = job_filter or JobFilter()
    matched = sorted(
        (job for job in jobs if job_filter.matches(job)),
        key=lambda job: job.created_at,
        reverse=True,
    )
    if job_filter.limit is not None:
        matched = matched[: job_filter.limit]
    return matched


class JobStore(ABC):
    """Persistence interface for import jobs."""

    @abstractmethod
    async def add(self, job: ImportJob) -> None:
        """Store a new job.

        Raises:
            JobStateError: If a job with the same id already exists
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ImportJob]:
        pass

    @abstractmethod
    async def transition(self, job_id: str, mutate: JobMutation) -> ImportJob:
        """Apply ``mutate`` to the stored job atomically and return the result.

        ``mutate`` receives a copy of the current state and changes it in
        place. It may raise :class:`JobStateError` to reject the change, in
        which case nothing is written. No other writer can interleave between
        the read it sees and the write of its result.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If ``mutate`` rejects the current state
        """
        pass

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a job; returns False if it did not exist."""
        pass

    @abstractmethod
    async def list(self, job_filter: Optional[JobFilter] = None) -> List[ImportJob]:
        pass


class InMemoryJobStore(JobStore):
    """Process-local job store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = asyncio.Lock()

    async def add(self, job: ImportJob) -> None:
        async with self._lock:
            if job.id in self._jobs:
                raise JobStateError(f"Job {job.id} already exists", {"job_id": job.id})
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[ImportJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def transition(self, job_id: str, mutate: JobMutation) -> ImportJob:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(f"Job {job_id} not found", {"job_id": job_id})
            job = current.model_copy(deep=True)
            mutate(job)
            self._jobs[job_id] = job.model_copy(deep=True)
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def list(self, job_filter: Optional[JobFilter] = None) -> List[ImportJob]:
        async with self._lock:
            jobs = [job.model_copy(deep=True) for job in self._jobs.values()]
        return _apply_filter(jobs, job_filter)


class RedisJobStore(JobStore):
    """
    Redis-backed job store.

    Jobs are JSON documents under ``catalog-import:job:<id>``; the set
    ``catalog-import:jobs`` indexes them for listing. Terminal jobs are
    saved with the retention TTL so every instance sees them expire.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        terminal_ttl_seconds: int = 3600,
        active_ttl_seconds: int = ACTIVE_JOB_TTL_SECONDS,
    ) -> None:
        self._redis = redis_client
        self._terminal_ttl = terminal_ttl_seconds
        self._active_ttl = active_ttl_seconds

    def _ttl_for(self, job: ImportJob) -> int:
        return self._terminal_ttl if job.is_terminal else self._active_ttl

    async def add(self, job: ImportJob) -> None:
        created = await self._redis.set(
            _job_key(job.id), job.to_json(), ex=self._ttl_for(job), nx=True
        )
        if not created:
            raise JobStateError(f"Job {job.id} already exists", {"job_id": job.id})
        await self._redis.sadd(JOB_INDEX_KEY, job.id)
        logger.debug("job_stored", job_id=job.id)

    async def get(self, job_id: str) -> Optional[ImportJob]:
        data = await self._redis.get(_job_key(job_id))
        if not data:
            return None
        return ImportJob.from_json(data)

    async def transition(self, job_id: str, mutate: JobMutation) -> ImportJob:
        """Optimistic WATCH/MULTI update; retried when another writer wins."""
        key = _job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        raise JobNotFoundError(f"Job {job_id} not found", {"job_id": job_id})
                    job = ImportJob.from_json(data)
                    mutate(job)
                    pipe.multi()
                    pipe.set(key, job.to_json(), ex=self._ttl_for(job))
                    await pipe.execute()
                    return job
                except WatchError:
                    logger.debug("job_transition_conflict", job_id=job_id)

    async def delete(self, job_id: str) -> bool:
        removed = await self._redis.delete(_job_key(job_id))
        await self._redis.srem(JOB_INDEX_KEY, job_id)
        return bool(removed)

    async def list(self, job_filter: Optional[JobFilter] = None) -> List[ImportJob]:
        members = await self._redis.smembers(JOB_INDEX_KEY)
        job_ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
        if not job_ids:
            return []

        payloads = await self._redis.mget([_job_key(job_id) for job_id in job_ids])
        jobs: List[ImportJob] = []
        expired: List[str] = []
        for job_id, payload in zip(job_ids, payloads):
            if payload is None:
                expired.append(job_id)
            else:
                jobs.append(ImportJob.from_json(payload))

        if expired:
            # Documents expired through TTL; drop them from the index too
            await self._redis.srem(JOB_INDEX_KEY, *expired)
        return _apply_filter(jobs, job_filter)
