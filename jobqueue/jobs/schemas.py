"""
Pydantic schemas for the job engine.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from jobqueue.config.settings import Settings


class WorkerOptions(BaseModel):
    """Per-worker configuration; each worker loop owns one."""

    model_config = ConfigDict(frozen=True)

    worker_name: str = Field(..., min_length=1, description="Lock owner identity")
    min_priority: int | None = Field(default=None, description="Lowest priority value to run")
    max_priority: int | None = Field(default=None, description="Highest priority value to run")
    destroy_failed_jobs: bool = Field(
        default=True, description="Delete jobs that exhaust their attempts"
    )
    max_attempts: int = Field(default=25, ge=1, description="Terminal failure threshold")
    max_run_time_s: int = Field(default=4 * 60 * 60, gt=0, description="Lock staleness window")
    batch_size: int = Field(default=5, ge=1, description="Candidates read per reserve")
    work_off_batch: int = Field(default=100, ge=1, description="Iterations per polling round")
    sleep_delay_s: float = Field(default=5.0, ge=0, description="Idle sleep between rounds")

    @model_validator(mode="after")
    def check_priority_window(self) -> "WorkerOptions":
        if (
            self.min_priority is not None
            and self.max_priority is not None
            and self.min_priority > self.max_priority
        ):
            raise ValueError("min_priority must not exceed max_priority")
        return self

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "WorkerOptions":
        values = {
            "worker_name": settings.worker_name,
            "min_priority": settings.min_priority,
            "max_priority": settings.max_priority,
            "destroy_failed_jobs": settings.destroy_failed_jobs,
            "max_attempts": settings.max_attempts,
            "max_run_time_s": settings.max_run_time_s,
            "batch_size": settings.batch_size,
            "work_off_batch": settings.work_off_batch,
            "sleep_delay_s": settings.sleep_delay_s,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class JobCreate(BaseModel):
    """Scheduling options for a new job."""

    priority: int = Field(default=0, description="Lower runs first")
    run_at: datetime | None = Field(default=None, description="Earliest time to run job")
    reoccur_in: str | None = Field(default=None, description="Stored recurrence")


class WorkOffResult(BaseModel):
    """Outcome counts of one ``work_off`` call."""

    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure


class JobStats(BaseModel):
    """Queue statistics."""

    total: int
    ready: int
    scheduled: int
    locked: int
    failed: int
    recurring: int
