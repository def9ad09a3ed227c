from typing import Any


class JobQueueError(Exception):
    """Base exception for the job queue."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class LockError(JobQueueError):
    """Raised when a worker cannot obtain exclusive access to a job."""

    def __init__(self, job_id: int | None, worker_name: str):
        self.job_id = job_id
        self.worker_name = worker_name
        super().__init__(
            f"Job #{job_id} could not be locked by '{worker_name}': "
            "locked by another worker",
            {"job_id": job_id, "worker_name": worker_name},
        )


class DeserializationError(JobQueueError):
    """Raised when a stored payload references a type that cannot be resolved."""

    def __init__(self, type_name: str, tag: str, reason: str | None = None):
        self.type_name = type_name
        self.tag = tag
        message = f"Job failed to load: unknown {tag} type '{type_name}'"
        if reason:
            message = f"Job failed to load: {reason}"
        super().__init__(message, {"type_name": type_name, "tag": tag})


class InvalidJobError(JobQueueError, TypeError):
    """Raised synchronously when a job cannot be enqueued as given."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
