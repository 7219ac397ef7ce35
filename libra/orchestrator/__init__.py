"""Job orchestration: jobs, lanes, queues, schedulers and retry timers."""

from .bootstrap import RecurringRuntime, RecurringUnit, bootstrap_recurring
from .errors import JobTimeoutError, NoAvailableWorkerError
from .job import Job, JobDescriptor, JobOptions, JobStatus, validate_job_data
from .queue import LANES, Queue, QueueMode, QueueStats
from .queue_manager import QueueManager
from .scheduler import Scheduler, SchedulerEvent, SchedulerManager
from .timer import RetryTimer

__all__ = [
    "LANES",
    "Job",
    "JobDescriptor",
    "JobOptions",
    "JobStatus",
    "JobTimeoutError",
    "NoAvailableWorkerError",
    "Queue",
    "QueueManager",
    "QueueMode",
    "QueueStats",
    "RecurringRuntime",
    "RecurringUnit",
    "RetryTimer",
    "Scheduler",
    "SchedulerEvent",
    "SchedulerManager",
    "bootstrap_recurring",
    "validate_job_data",
]
