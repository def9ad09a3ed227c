"""
Worker loop: reserve a job, run it, record the outcome.
"""

import asyncio
import inspect
import time
import traceback
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.core.exceptions import LockError
from jobqueue.infra.database import Database
from jobqueue.jobs.models import Job
from jobqueue.jobs.performable import PerformableMethod
from jobqueue.jobs.schemas import WorkerOptions, WorkOffResult
from jobqueue.jobs.service import JobService

logger = get_logger(__name__)


class JobWorker:
    """
    Polls the jobs table and runs whatever it manages to lock.

    Each worker carries its own ``WorkerOptions``, so several workers with
    different names or priority windows can share one process.
    """

    def __init__(self, service: JobService, database: Database, options: WorkerOptions):
        self.service = service
        self.database = database
        self.options = options
        self.running = False
        self._stop_event = asyncio.Event()
        self.logger = logger.bind(worker_name=options.worker_name)

    @property
    def name(self) -> str:
        return self.options.worker_name

    @property
    def max_run_time(self) -> timedelta:
        return timedelta(seconds=self.options.max_run_time_s)

    async def work_off(self, num: int = 100) -> WorkOffResult:
        """Run up to ``num`` jobs; stops early once nothing can be reserved."""
        result = WorkOffResult()
        for _ in range(num):
            outcome = await self.reserve_and_run_one_job()
            if outcome is None:
                break
            if outcome:
                result.success += 1
            else:
                result.failure += 1
        return result

    async def reserve_and_run_one_job(self) -> bool | None:
        """
        Lock the first available candidate and run it.

        Returns True on success, False on failure and None when no candidate
        could be locked.
        """
        async with self.database.SessionLocal() as session:
            candidates = await self.service.find_available(
                session,
                limit=self.options.batch_size,
                max_run_time=self.max_run_time,
                min_priority=self.options.min_priority,
                max_priority=self.options.max_priority,
                worker_name=self.name,
            )
            for job in candidates:
                outcome = await self.run_with_lock(session, job)
                if outcome is not None:
                    return outcome
        return None

    async def run_with_lock(self, session: AsyncSession, job: Job) -> bool | None:
        try:
            await self.service.lock_exclusively(session, job, self.max_run_time, self.name)
        except LockError:
            self.logger.info("Failed to acquire exclusive lock", job_id=job.id)
            return None
        return await self.run(session, job)

    async def run(self, session: AsyncSession, job: Job) -> bool:
        job_logger = self.logger.bind(job_id=job.id, job_name=self.service.job_name(job))
        started = time.monotonic()

        try:
            await self.invoke_job(job)
        except Exception as e:
            await self.service.reschedule(
                session,
                job,
                str(e) or type(e).__name__,
                traceback.format_exc(),
                destroy_failed_jobs=self.options.destroy_failed_jobs,
                max_attempts=self.options.max_attempts,
            )
            job_logger.error(
                "Job failed",
                error=str(e),
                error_type=type(e).__name__,
                attempts=job.attempts,
            )
            return False

        await self.service.complete(session, job)
        job_logger.info(
            "Job completed",
            runtime_s=round(time.monotonic() - started, 4),
            recurring=job.reoccur_in is not None,
        )
        return True

    async def invoke_job(self, job: Job) -> Any:
        """
        Decode the payload and call ``perform``.

        The payload gets its own session, committed on success, so work done
        by deferred model methods never shares a transaction with the job row.
        """
        payload = self.service.load_payload(job)
        async with self.database.SessionLocal() as perform_session:
            if isinstance(payload, PerformableMethod):
                result = payload.perform(perform_session)
            else:
                result = payload.perform()
            if inspect.isawaitable(result):
                result = await result
            await perform_session.commit()
        return result

    # Polling loop

    async def start(self) -> None:
        """Work off jobs until ``stop`` is called, then release this worker's locks."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stop_event.clear()
        self.logger.info(
            "Starting job worker",
            min_priority=self.options.min_priority,
            max_priority=self.options.max_priority,
            sleep_delay_s=self.options.sleep_delay_s,
        )

        try:
            while self.running:
                try:
                    started = time.monotonic()
                    result = await self.work_off(self.options.work_off_batch)
                    elapsed = time.monotonic() - started
                except Exception:
                    self.logger.exception("Error in worker loop")
                    await self._sleep(self.options.sleep_delay_s)
                    continue

                if result.total == 0:
                    await self._sleep(self.options.sleep_delay_s)
                    continue

                rate = result.total / elapsed if elapsed > 0 else float(result.total)
                self.logger.info(
                    f"{result.total} jobs processed at {rate:.4f} j/s, "
                    f"{result.failure} failed",
                    success=result.success,
                    failure=result.failure,
                )
        finally:
            self.running = False
            async with self.database.SessionLocal() as session:
                await self.service.clear_locks(session, self.name)
            self.logger.info("Job worker stopped")

    async def stop(self) -> None:
        self.logger.info("Stopping job worker")
        self.running = False
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
