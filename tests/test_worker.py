"""
Tests for the worker loop: reserving, running and recording outcomes.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from jobqueue.core.clock import FixedClock
from jobqueue.core.exceptions import LockError
from jobqueue.core.registries import TypeRegistry
from jobqueue.jobs.codec import PayloadCodec, TypeResolver
from jobqueue.jobs.models import Job
from jobqueue.jobs.schemas import WorkerOptions
from jobqueue.jobs.service import JobService
from jobqueue.jobs.worker import JobWorker
from sample_jobs import AsyncJob, EmailJob, ErrorJob, M, SimpleJob


def make_worker(service, database, settings, **overrides) -> JobWorker:
    return JobWorker(service, database, WorkerOptions.from_settings(settings, **overrides))


class TestWorkOff:
    """Test running batches of jobs."""

    @pytest.mark.asyncio
    async def test_successful_job_is_deleted(self, session, service, worker):
        await service.enqueue(session, SimpleJob())
        await service.enqueue(session, SimpleJob())
        assert await service.count(session) == 2

        result = await worker.work_off(1)

        assert (result.success, result.failure) == (1, 0)
        assert SimpleJob.runs == 1
        assert await service.count(session) == 1

    @pytest.mark.asyncio
    async def test_runs_everything_that_is_due(self, session, service, worker):
        await service.enqueue(session, SimpleJob())
        await service.enqueue(session, M.ModuleJob())
        await service.enqueue(session, EmailJob("ops@example.com"))
        await service.enqueue(session, AsyncJob())
        await service.enqueue(session, SimpleJob(), run_at=datetime.now(UTC) + timedelta(hours=1))

        result = await worker.work_off()

        assert (result.success, result.failure) == (4, 0)
        assert SimpleJob.runs == 1
        assert M.ModuleJob.runs == 1
        assert AsyncJob.runs == 1
        assert EmailJob.sent == ["ops@example.com"]
        assert await service.count(session) == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, worker):
        result = await worker.work_off()

        assert (result.success, result.failure) == (0, 0)

    @pytest.mark.asyncio
    async def test_num_caps_the_batch(self, session, service, worker):
        for _ in range(5):
            await service.enqueue(session, SimpleJob())

        result = await worker.work_off(3)

        assert result.success == 3
        assert await service.count(session) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("min_priority", "max_priority", "expected"),
        [
            (None, None, {-5, 0, 3, 10}),
            (0, None, {0, 3, 10}),
            (None, 3, {-5, 0, 3}),
            (0, 3, {0, 3}),
            (4, 9, set()),
        ],
    )
    async def test_priority_window(
        self, session, service, database, settings, min_priority, max_priority, expected
    ):
        jobs = {p: await service.enqueue(session, SimpleJob(), priority=p) for p in (-5, 0, 3, 10)}
        worker = make_worker(
            service, database, settings, min_priority=min_priority, max_priority=max_priority
        )

        result = await worker.work_off()

        assert result.success == len(expected)
        remaining = {job.priority for job in await service.list_jobs(session)}
        assert remaining == set(jobs) - expected

    @pytest.mark.asyncio
    async def test_lost_lock_race_changes_nothing(self, session, service, worker):
        job = await service.enqueue(session, SimpleJob())

        with patch.object(
            service, "lock_exclusively", AsyncMock(side_effect=LockError(job.id, "rival"))
        ) as lock:
            result = await worker.work_off()

        assert lock.await_count == 1
        assert (result.success, result.failure) == (0, 0)
        assert SimpleJob.runs == 0
        await session.refresh(job)
        assert job.attempts == 0
        assert job.locked_by is None
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_locked_candidate_is_skipped_for_the_next_one(
        self, session, service, worker
    ):
        blocked = await service.enqueue(session, SimpleJob(), priority=0)
        free = await service.enqueue(session, SimpleJob(), priority=1)
        real_lock = service.lock_exclusively

        async def lock(session_, job, max_run_time, worker_name):
            if job.id == blocked.id:
                raise LockError(job.id, worker_name)
            await real_lock(session_, job, max_run_time, worker_name)

        with patch.object(service, "lock_exclusively", side_effect=lock):
            result = await worker.work_off(1)

        assert result.success == 1
        jobs = await service.list_jobs(session)
        assert [job.id for job in jobs] == [blocked.id]
        assert free.id not in [job.id for job in jobs]

    @pytest.mark.asyncio
    async def test_resumes_jobs_it_had_locked_itself(self, session, service, worker):
        job = await service.enqueue(session, SimpleJob())
        job.locked_by = worker.name
        job.locked_at = datetime.now(UTC) - timedelta(minutes=1)
        await session.commit()

        result = await worker.work_off()

        assert result.success == 1
        assert await service.count(session) == 0

    @pytest.mark.asyncio
    async def test_leaves_jobs_locked_by_others(self, session, service, worker):
        job = await service.enqueue(session, SimpleJob())
        job.locked_by = "someone-else"
        job.locked_at = datetime.now(UTC) - timedelta(minutes=1)
        await session.commit()

        result = await worker.work_off()

        assert result.success == 0
        assert await service.count(session) == 1


class TestFailures:
    """Test the retry and terminal failure policy."""

    @pytest.mark.asyncio
    async def test_first_failure_is_rescheduled(self, session, service, worker):
        job = await service.enqueue(session, ErrorJob())

        result = await worker.work_off()
        await session.refresh(job)

        assert (result.success, result.failure) == (0, 1)
        assert ErrorJob.runs == 1
        assert job.attempts == 1
        assert "did not work" in job.last_error
        assert "Traceback" in job.last_error
        now = datetime.now(UTC)
        assert now - timedelta(minutes=10) < job.run_at < now + timedelta(minutes=10)
        assert job.locked_by is None
        assert job.locked_at is None
        assert job.failed_at is None

    def test_backoff_grows_steeply(self, service):
        delays = [service.backoff_seconds(n) for n in range(1, 6)]

        assert delays == [6, 21, 86, 261, 630]
        assert service.backoff_seconds(10) > 60 * 60 * 2

    @pytest.mark.asyncio
    async def test_failed_job_is_destroyed_at_the_threshold(self, session, service, worker):
        job = await service.enqueue(session, ErrorJob())
        job.attempts = 50
        await session.commit()

        result = await worker.work_off()

        assert result.failure == 1
        assert await service.count(session) == 0

    @pytest.mark.asyncio
    async def test_failed_job_is_kept_when_destroy_is_disabled(
        self, session, service, database, settings
    ):
        worker = make_worker(service, database, settings, destroy_failed_jobs=False)
        job = await service.enqueue(session, ErrorJob())
        job.attempts = 50
        await session.commit()
        assert job.failed_at is None
        run_at = job.run_at

        result = await worker.work_off()
        await session.refresh(job)

        assert result.failure == 1
        assert await service.count(session) == 1
        assert job.failed_at is not None
        assert job.attempts == 51
        assert job.run_at == run_at
        assert job.locked_by is None

        # never picked again
        assert (await worker.work_off()).failure == 0
        assert ErrorJob.runs == 1

    @pytest.mark.asyncio
    async def test_threshold_follows_max_attempts(self, session, service, database, settings):
        worker = make_worker(
            service, database, settings, max_attempts=2, destroy_failed_jobs=False
        )
        job = await service.enqueue(session, ErrorJob())

        await worker.work_off()
        await session.refresh(job)
        assert job.failed_at is None

        job.run_at = datetime.now(UTC)
        await session.commit()
        await worker.work_off()
        await session.refresh(job)

        assert job.attempts == 2
        assert job.failed_at is not None

    @pytest.mark.asyncio
    async def test_unloadable_payload_is_a_job_failure(self, session, service, worker):
        job = await service.enqueue(session, SimpleJob())
        job.handler = '{"!object": "sample_jobs:GoneJob", "fields": {}}'
        await session.commit()

        result = await worker.work_off()
        await session.refresh(job)

        assert result.failure == 1
        assert job.attempts == 1
        assert "Job failed to load" in job.last_error
        assert "GoneJob" in job.last_error
        assert job.name == "GoneJob"


class TestPollingLoop:
    """Test the long-running start/stop loop."""

    @pytest.mark.asyncio
    async def test_start_runs_jobs_until_stopped(self, session, service, worker):
        await service.enqueue(session, SimpleJob())

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if SimpleJob.runs:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert SimpleJob.runs == 1
        assert worker.running is False
        assert await service.count(session) == 0

    @pytest.mark.asyncio
    async def test_stop_releases_this_workers_locks(self, session, service, worker):
        job = await service.enqueue(
            session, SimpleJob(), run_at=datetime.now(UTC) + timedelta(hours=1)
        )
        job.locked_by = worker.name
        job.locked_at = datetime.now(UTC)
        await session.commit()

        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        await session.refresh(job)
        assert job.locked_by is None
        assert job.locked_at is None

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, worker):
        worker.running = True

        with pytest.raises(RuntimeError, match="already running"):
            await worker.start()


class TestJobRecord:
    """Test derived properties of the job model."""

    @pytest.mark.asyncio
    async def test_run_at_defaults_to_now(self, session, service):
        before = datetime.now(UTC)
        job = await service.enqueue(session, SimpleJob())

        assert job.run_at is not None
        assert before - timedelta(seconds=1) <= job.run_at <= datetime.now(UTC)

    @pytest.mark.asyncio
    async def test_explicit_run_at_is_preserved(self, session, service):
        later = datetime(2030, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)

        job = await service.enqueue(session, SimpleJob(), run_at=later)

        assert job.run_at == later
        assert isinstance(job, Job)


class TestConcurrentWorkers:
    """Test workers racing for the same candidates."""

    NOW = datetime(2024, 5, 14, 12, 0, tzinfo=UTC)

    @pytest.fixture
    def clocked_service(self, settings) -> JobService:
        return JobService(settings, clock=FixedClock(self.NOW))

    @pytest.mark.asyncio
    async def test_recurring_job_already_run_by_another_worker_is_skipped(
        self, session, database, settings, clocked_service
    ):
        first = make_worker(clocked_service, database, settings, worker_name="worker-1")
        second = make_worker(clocked_service, database, settings, worker_name="worker-2")
        job = await clocked_service.schedule(session, SimpleJob(), reoccur_in=300)

        async with database.SessionLocal() as first_session:
            candidates = await clocked_service.find_available(
                first_session, worker_name=first.name
            )
            assert [c.id for c in candidates] == [job.id]

            assert (await second.work_off(1)).success == 1
            assert await first.run_with_lock(first_session, candidates[0]) is None

        await session.refresh(job)
        assert SimpleJob.runs == 1
        assert job.run_at == self.NOW + timedelta(minutes=5)
        assert job.locked_by is None

    @pytest.mark.asyncio
    async def test_job_failed_by_another_worker_is_not_run_again(
        self, session, database, settings, clocked_service
    ):
        first = make_worker(
            clocked_service, database, settings, worker_name="worker-1", destroy_failed_jobs=False
        )
        second = make_worker(
            clocked_service, database, settings, worker_name="worker-2", destroy_failed_jobs=False
        )
        job = await clocked_service.enqueue(session, ErrorJob())
        job.attempts = 24
        await session.commit()

        async with database.SessionLocal() as first_session:
            candidates = await clocked_service.find_available(
                first_session, worker_name=first.name
            )

            assert (await second.work_off(1)).failure == 1
            assert await first.run_with_lock(first_session, candidates[0]) is None

        await session.refresh(job)
        assert ErrorJob.runs == 1
        assert job.attempts == 25
        assert job.failed_at == self.NOW


class TestPayloadCodec:
    """Test that the worker decodes with the service's codec."""

    @pytest.fixture
    def registry_codec(self) -> PayloadCodec:
        registry = TypeRegistry()
        registry.register("simple", SimpleJob)
        return PayloadCodec(TypeResolver(registry))

    @pytest.mark.asyncio
    async def test_custom_codec_names_and_runs_the_job(
        self, session, database, settings, registry_codec
    ):
        service = JobService(settings, codec=registry_codec)
        worker = make_worker(service, database, settings)
        job = await service.enqueue(session, SimpleJob())

        assert '"simple"' in job.handler
        assert service.job_name(job) == "SimpleJob"

        with patch.object(registry_codec, "decode", wraps=registry_codec.decode) as decode:
            result = await worker.work_off()

        assert result.success == 1
        assert SimpleJob.runs == 1
        # named and performed from one decode
        assert decode.call_count == 1
