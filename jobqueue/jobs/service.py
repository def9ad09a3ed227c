"""
Job service: enqueueing, selection, locking and outcome handling.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.settings import Settings, get_settings
from jobqueue.core.clock import Clock, SystemClock
from jobqueue.core.exceptions import InvalidJobError, LockError
from jobqueue.jobs.codec import PayloadCodec, default_codec
from jobqueue.jobs.models import Job
from jobqueue.jobs.performable import PerformableMethod
from jobqueue.jobs.recurrence import RecurrenceEngine, RecurrenceRule, normalize_reoccur_in
from jobqueue.jobs.schemas import JobCreate, JobStats

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _as_timedelta(value: timedelta | int | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class JobService:
    """Service for managing jobs in the shared jobs table."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock | None = None,
        codec: PayloadCodec | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.codec = codec or default_codec
        self.recurrence = RecurrenceEngine(self.clock)

    @property
    def max_run_time(self) -> timedelta:
        return timedelta(seconds=self.settings.max_run_time_s)

    @staticmethod
    def backoff_seconds(attempts: int) -> int:
        """Delay before the next try: grows from seconds to hours within a few failures."""
        return attempts**4 + 5

    # Producers

    async def enqueue(
        self,
        session: AsyncSession,
        unit: Any,
        priority: int = 0,
        run_at: datetime | None = None,
    ) -> Job:
        """
        Persist ``unit`` as a new job.

        Args:
            session: Database session
            unit: Object with a callable ``perform``
            priority: Lower runs first
            run_at: Earliest time to run; defaults to now

        Returns:
            The committed job record
        """
        return await self._create(session, unit, JobCreate(priority=priority, run_at=run_at))

    async def schedule(
        self,
        session: AsyncSession,
        unit: Any,
        reoccur_in: int | timedelta | str | RecurrenceRule | None = None,
        every: int | timedelta | str | RecurrenceRule | None = None,
        priority: int = 0,
        run_at: datetime | None = None,
    ) -> Job:
        """Persist ``unit`` as a recurring job; ``every`` is an alias of ``reoccur_in``."""
        if (reoccur_in is None) == (every is None):
            raise InvalidJobError("schedule needs exactly one of reoccur_in or every")
        stored = normalize_reoccur_in(reoccur_in if reoccur_in is not None else every)
        return await self._create(
            session,
            unit,
            JobCreate(priority=priority, run_at=run_at, reoccur_in=stored),
        )

    async def send_later(
        self,
        session: AsyncSession,
        receiver: Any,
        method: str,
        *args: Any,
        priority: int = 0,
        run_at: datetime | None = None,
        **kwargs: Any,
    ) -> Job:
        """Enqueue ``receiver.method(*args, **kwargs)`` to run in a worker."""
        performable = PerformableMethod.build(receiver, method, *args, **kwargs)
        return await self.enqueue(session, performable, priority=priority, run_at=run_at)

    async def _create(self, session: AsyncSession, unit: Any, job_create: JobCreate) -> Job:
        if isinstance(unit, type) or not callable(getattr(unit, "perform", None)):
            raise InvalidJobError(
                "Cannot enqueue items which do not respond to perform",
                {"type": type(unit).__qualname__},
            )

        job = Job(
            priority=job_create.priority,
            run_at=_as_utc(job_create.run_at) if job_create.run_at else self.clock.now(),
            reoccur_in=job_create.reoccur_in,
            handler=self.codec.encode(unit),
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "job_name": self.job_name(job),
                "priority": job.priority,
                "run_at": job.run_at.isoformat(),
                "reoccur_in": job.reoccur_in,
            },
        )
        return job

    def load_payload(self, job: Job) -> Any:
        """Decode the job's executable unit with this service's codec."""
        return job.load_payload(self.codec)

    def job_name(self, job: Job) -> str:
        return job.display_name(self.codec)

    # Selection

    async def find_available(
        self,
        session: AsyncSession,
        limit: int = 5,
        max_run_time: timedelta | int | float | None = None,
        min_priority: int | None = None,
        max_priority: int | None = None,
        worker_name: str | None = None,
    ) -> list[Job]:
        """
        Read runnable jobs in dequeue order.

        A job is runnable when it is due, not failed, inside the priority
        window and unlocked or holding a stale lock. Jobs already locked by
        ``worker_name`` are runnable too. Nothing is claimed here.
        """
        now = self.clock.now()
        max_run_time = _as_timedelta(
            max_run_time if max_run_time is not None else self.max_run_time
        )

        lock_free = or_(Job.locked_by.is_(None), Job.locked_at < now - max_run_time)
        if worker_name is not None:
            lock_free = or_(lock_free, Job.locked_by == worker_name)

        query = select(Job).where(Job.run_at <= now, Job.failed_at.is_(None), lock_free)
        if min_priority is not None:
            query = query.where(Job.priority >= min_priority)
        if max_priority is not None:
            query = query.where(Job.priority <= max_priority)
        query = query.order_by(Job.priority, Job.run_at, Job.id).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())

    # Locking

    async def lock_exclusively(
        self,
        session: AsyncSession,
        job: Job,
        max_run_time: timedelta | int | float,
        worker_name: str,
    ) -> None:
        """
        Claim ``job`` for ``worker_name`` with one conditional update.

        The row must not have failed. A worker that already holds the lock
        refreshes it regardless of its age. Anyone else only wins when the
        row is due and unlocked, or its lock is older than ``max_run_time``.
        Raises ``LockError`` when no row matched; on success ``job`` is
        reloaded from the claimed row.
        """
        now = self.clock.now()
        claimable = or_(
            Job.locked_by == worker_name,
            and_(
                or_(
                    Job.locked_by.is_(None),
                    Job.locked_at < now - _as_timedelta(max_run_time),
                ),
                Job.run_at <= now,
            ),
        )

        result = await session.execute(
            update(Job)
            .where(Job.id == job.id, Job.failed_at.is_(None), claimable)
            .values(locked_at=now, locked_by=worker_name, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount != 1:
            logger.info(
                "Job lock lost",
                extra={"job_id": job.id, "worker_name": worker_name},
            )
            raise LockError(job.id, worker_name)

        # another worker may have run the job since it was read
        await session.refresh(job)

    def unlock(self, job: Job) -> None:
        job.locked_at = None
        job.locked_by = None

    # Outcomes

    async def complete(self, session: AsyncSession, job: Job) -> None:
        """Delete a finished job, or reset it for its next cycle when recurring."""
        if job.reoccur_in is not None:
            await self.reoccur(session, job)
            return
        await session.delete(job)
        await session.commit()

    async def reoccur(self, session: AsyncSession, job: Job) -> None:
        job.run_at = self.recurrence.schedule_next(job.reoccur_in, job.run_at)
        job.attempts = 0
        self.unlock(job)
        await session.commit()

        logger.info(
            "Job rescheduled for next cycle",
            extra={
                "job_id": job.id,
                "reoccur_in": job.reoccur_in,
                "run_at": job.run_at.isoformat(),
            },
        )

    async def reschedule(
        self,
        session: AsyncSession,
        job: Job,
        message: str,
        backtrace: str | list[str] | None = None,
        destroy_failed_jobs: bool | None = None,
        max_attempts: int | None = None,
    ) -> None:
        """
        Record a failed execution.

        Below ``max_attempts`` the job is pushed back by ``backoff_seconds``.
        At the threshold it is deleted, or marked ``failed_at`` when
        ``destroy_failed_jobs`` is off.
        """
        if destroy_failed_jobs is None:
            destroy_failed_jobs = self.settings.destroy_failed_jobs
        if max_attempts is None:
            max_attempts = self.settings.max_attempts
        if isinstance(backtrace, list):
            backtrace = "\n".join(backtrace)

        now = self.clock.now()
        job.attempts += 1
        job.last_error = f"{message}\n{backtrace}" if backtrace else message

        if job.attempts >= max_attempts:
            if destroy_failed_jobs:
                logger.warning(
                    "Job removed permanently",
                    extra={"job_id": job.id, "attempts": job.attempts},
                )
                await session.delete(job)
                await session.commit()
                return
            job.failed_at = now
            logger.warning(
                "Job failed permanently",
                extra={"job_id": job.id, "attempts": job.attempts},
            )
        else:
            job.run_at = now + timedelta(seconds=self.backoff_seconds(job.attempts))
            logger.info(
                "Job rescheduled after failure",
                extra={
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "run_at": job.run_at.isoformat(),
                },
            )

        self.unlock(job)
        await session.commit()

    # Maintenance

    async def clear_locks(self, session: AsyncSession, worker_name: str) -> int:
        """Release every lock held by ``worker_name``."""
        result = await session.execute(
            update(Job)
            .where(Job.locked_by == worker_name)
            .values(locked_by=None, locked_at=None, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        cleared = result.rowcount
        if cleared:
            logger.info(
                "Cleared job locks",
                extra={"worker_name": worker_name, "cleared_count": cleared},
            )
        return cleared

    async def delete_all(self, session: AsyncSession) -> int:
        result = await session.execute(delete(Job))
        await session.commit()
        return result.rowcount

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count(Job.id)))
        return result.scalar() or 0

    async def get_job(self, session: AsyncSession, job_id: int) -> Job | None:
        return await session.get(Job, job_id)

    async def list_jobs(
        self, session: AsyncSession, limit: int = 50, failed_only: bool = False
    ) -> list[Job]:
        query = select(Job)
        if failed_only:
            query = query.where(Job.failed_at.is_not(None))
        query = query.order_by(Job.priority, Job.run_at, Job.id).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())

    async def retry_failed(self, session: AsyncSession, job_id: int) -> bool:
        """Put a permanently failed job back into the queue, due now."""
        now = self.clock.now()
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.failed_at.is_not(None))
            .values(
                failed_at=None,
                attempts=0,
                run_at=now,
                locked_at=None,
                locked_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job retried", extra={"job_id": job_id})
        return success

    async def get_stats(self, session: AsyncSession) -> JobStats:
        now = self.clock.now()

        async def count_where(*criteria) -> int:
            result = await session.execute(select(func.count(Job.id)).where(*criteria))
            return result.scalar() or 0

        return JobStats(
            total=await count_where(),
            ready=await count_where(
                Job.failed_at.is_(None), Job.run_at <= now, Job.locked_by.is_(None)
            ),
            scheduled=await count_where(Job.failed_at.is_(None), Job.run_at > now),
            locked=await count_where(Job.locked_by.is_not(None)),
            failed=await count_where(Job.failed_at.is_not(None)),
            recurring=await count_where(Job.reoccur_in.is_not(None)),
        )
