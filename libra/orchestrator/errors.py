"""Errors raised by the queue and dispatch machinery."""

from __future__ import annotations

from libra.errors import ErrorCode, LibraError


class NoAvailableWorkerError(LibraError):
    """Every worker of a queue is busy; the job stays pending."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(
            f"No available worker on queue '{queue_name}'",
            code=ErrorCode.NO_AVAILABLE_WORKER,
            meta={"queue": queue_name},
        )
        self.queue_name = queue_name


class JobTimeoutError(LibraError):
    def __init__(self, job_id: str, timeout_ms: int) -> None:
        super().__init__(
            f"Job {job_id} timed out after {timeout_ms}ms",
            code=ErrorCode.JOB_TIMEOUT,
            meta={"job_id": job_id, "timeout_ms": timeout_ms},
        )
        self.job_id = job_id
        self.timeout_ms = timeout_ms


__all__ = ["NoAvailableWorkerError", "JobTimeoutError"]
