"""Unit tests for the job lifecycle manager."""
import asyncio

import pytest

from catalog_import.errors.exceptions import ImportCancelledError, JobNotFoundError, JobStateError
from catalog_import.models.job import JobFilter, JobStatus
from catalog_import.services.job_manager import JobLifecycleManager
from catalog_import.services.job_store import InMemoryJobStore


class RoundTripJobStore(InMemoryJobStore):
    """In-memory store that yields to the loop like a networked store."""

    async def get(self, job_id):
        await asyncio.sleep(0)
        return await super().get(job_id)

    async def transition(self, job_id, mutate):
        await asyncio.sleep(0)
        return await super().transition(job_id, mutate)


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_create_job_defaults(self, manager):
        job = await manager.create_job(metadata={"filename": "feed.xml"})

        assert job.status == JobStatus.CREATED
        assert job.progress == 0
        assert job.metadata == {"filename": "feed.xml"}
        assert (await manager.get_job(job.id)).id == job.id

    @pytest.mark.asyncio
    async def test_duplicate_job_id_rejected(self, manager):
        await manager.create_job("job-1")

        with pytest.raises(JobStateError):
            await manager.create_job("job-1")

    @pytest.mark.asyncio
    async def test_unknown_job(self, manager):
        assert await manager.get_job("missing") is None
        with pytest.raises(JobNotFoundError):
            await manager.update_status("missing", JobStatus.PROCESSING)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_happy_path(self, manager):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING, progress=10, stage="parsing")
        job = await manager.update_status("job-1", JobStatus.COMPLETED, result={"created": {}})

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.completed_at is not None
        assert job.result == {"created": {}}

    @pytest.mark.asyncio
    async def test_created_cannot_complete_directly(self, manager):
        await manager.create_job("job-1")

        with pytest.raises(JobStateError):
            await manager.update_status("job-1", JobStatus.COMPLETED)

    @pytest.mark.parametrize("final", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, manager, final):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING)
        await manager.update_status("job-1", final)

        for target in JobStatus:
            with pytest.raises(JobStateError):
                await manager.update_status("job-1", target)

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self, manager):
        await manager.create_job("job-1")
        job = await manager.update_status("job-1", JobStatus.PROCESSING, progress=250)

        assert job.progress == 100

    @pytest.mark.asyncio
    async def test_report_progress_ignored_outside_processing(self, manager):
        await manager.create_job("job-1")

        assert await manager.report_progress("job-1", 50, "persisting") is None

        await manager.update_status("job-1", JobStatus.PROCESSING)
        job = await manager.report_progress("job-1", 50, "persisting")
        assert job.progress == 50
        assert job.stage == "persisting"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_signals_token(self, manager):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING)
        token = manager.get_token("job-1")

        job = await manager.cancel("job-1")

        assert job.status == JobStatus.CANCELLED
        assert token.cancelled
        with pytest.raises(ImportCancelledError):
            await token.checkpoint()

    @pytest.mark.asyncio
    async def test_cancel_finished_job_fails(self, manager):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.FAILED, error="boom")

        with pytest.raises(JobStateError):
            await manager.cancel("job-1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, manager):
        with pytest.raises(JobNotFoundError):
            await manager.cancel("missing")

    @pytest.mark.asyncio
    async def test_remote_cancellation_reaches_local_token(self):
        store = InMemoryJobStore()
        worker = JobLifecycleManager(store, retention_seconds=3600)
        api = JobLifecycleManager(store, retention_seconds=3600)
        await worker.create_job("job-1")
        await worker.update_status("job-1", JobStatus.PROCESSING)
        token = worker.get_token("job-1")

        await api.cancel("job-1")
        result = await worker.report_progress("job-1", 40, "persisting")

        assert result is None
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_concurrent_cancel_and_progress_end_cancelled(self):
        store = RoundTripJobStore()
        worker = JobLifecycleManager(store, retention_seconds=3600)
        api = JobLifecycleManager(store, retention_seconds=3600)
        await worker.create_job("job-1")
        await worker.update_status("job-1", JobStatus.PROCESSING)
        token = worker.get_token("job-1")

        await asyncio.gather(api.cancel("job-1"), worker.report_progress("job-1", 40, "persisting"))
        await worker.report_progress("job-1", 60, "persisting")

        assert (await store.get("job-1")).status == JobStatus.CANCELLED
        assert token.cancelled
        with pytest.raises(JobStateError):
            await worker.update_status("job-1", JobStatus.COMPLETED)
        assert (await store.get("job-1")).status == JobStatus.CANCELLED


class TestCommit:
    @pytest.mark.asyncio
    async def test_committing_job_cannot_be_cancelled(self, manager):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING)

        job = await manager.begin_commit("job-1")

        assert job.committing is True
        assert job.stage == "committing"
        assert job.is_cancellable is False
        with pytest.raises(JobStateError):
            await manager.cancel("job-1")
        assert not manager.get_token("job-1").cancelled

        done = await manager.update_status("job-1", JobStatus.COMPLETED)
        assert done.committing is False

    @pytest.mark.asyncio
    async def test_begin_commit_after_cancel_raises(self, manager):
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING)
        await manager.cancel("job-1")

        with pytest.raises(ImportCancelledError):
            await manager.begin_commit("job-1")

    @pytest.mark.asyncio
    async def test_begin_commit_sees_remote_cancel(self):
        store = InMemoryJobStore()
        worker = JobLifecycleManager(store, retention_seconds=3600)
        api = JobLifecycleManager(store, retention_seconds=3600)
        await worker.create_job("job-1")
        await worker.update_status("job-1", JobStatus.PROCESSING)
        token = worker.get_token("job-1")

        await api.cancel("job-1")

        with pytest.raises(ImportCancelledError):
            await worker.begin_commit("job-1")
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_begin_commit_requires_processing(self, manager):
        await manager.create_job("job-1")

        with pytest.raises(JobStateError):
            await manager.begin_commit("job-1")

class TestRetention:
    @pytest.mark.asyncio
    async def test_finished_job_expires(self):
        manager = JobLifecycleManager(InMemoryJobStore(), retention_seconds=0.05)
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.FAILED, error="boom")

        assert await manager.get_job("job-1") is not None
        await asyncio.sleep(0.2)
        assert await manager.get_job("job-1") is None

    @pytest.mark.asyncio
    async def test_active_job_does_not_expire(self):
        manager = JobLifecycleManager(InMemoryJobStore(), retention_seconds=0.05)
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.PROCESSING)

        await asyncio.sleep(0.2)
        assert await manager.get_job("job-1") is not None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self):
        manager = JobLifecycleManager(InMemoryJobStore(), retention_seconds=0.05)
        await manager.create_job("job-1")
        await manager.update_status("job-1", JobStatus.FAILED)

        await manager.shutdown()
        await asyncio.sleep(0.2)
        assert await manager.get_job("job-1") is not None


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_job_observers(self, manager):
        updates, cancels = [], []
        await manager.create_job("job-1")
        manager.subscribe("job-1", on_update=lambda job: updates.append(job.status), on_cancel=cancels.append)

        await manager.update_status("job-1", JobStatus.PROCESSING)
        await manager.cancel("job-1")

        assert updates == [JobStatus.PROCESSING, JobStatus.CANCELLED]
        assert [job.id for job in cancels] == ["job-1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager):
        updates = []
        await manager.create_job("job-1")
        unsubscribe = manager.subscribe("job-1", on_update=updates.append)

        unsubscribe()
        await manager.update_status("job-1", JobStatus.PROCESSING)

        assert updates == []

    @pytest.mark.asyncio
    async def test_async_global_listener(self, manager):
        seen = []

        async def listener(job):
            seen.append((job.id, job.status))

        unsubscribe = manager.subscribe_all(listener)
        await manager.create_job("job-1")
        unsubscribe()
        await manager.create_job("job-2")

        assert seen == [("job-1", JobStatus.CREATED)]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_updates(self, manager):
        def listener(job):
            raise RuntimeError("listener crashed")

        await manager.create_job("job-1")
        manager.subscribe("job-1", on_update=listener)

        job = await manager.update_status("job-1", JobStatus.PROCESSING)
        assert job.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_listeners_receive_copies(self, manager):
        received = []
        await manager.create_job("job-1")
        manager.subscribe("job-1", on_update=received.append)

        await manager.update_status("job-1", JobStatus.PROCESSING)
        received[0].progress = 99

        assert (await manager.get_job("job-1")).progress == 0


class TestListJobs:
    @pytest.mark.asyncio
    async def test_filter_by_status_and_limit(self, manager):
        for job_id in ("a", "b", "c"):
            await manager.create_job(job_id)
            await asyncio.sleep(0.001)
        await manager.update_status("b", JobStatus.PROCESSING)

        processing = await manager.list_jobs(JobFilter(status=JobStatus.PROCESSING))
        newest = await manager.list_jobs(JobFilter(limit=2))

        assert [job.id for job in processing] == ["b"]
        assert [job.id for job in newest] == ["c", "b"]
