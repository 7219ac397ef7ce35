"""Job state machine with write-through persistence."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from libra.errors import ErrorCode, JobValidationError, LibraError, NotFoundError
from libra.logging import get_logger
from libra.orchestrator.events import emit_job_event
from libra.utils.time import ensure_utc, now_utc

if TYPE_CHECKING:
    from libra.orchestrator.timer import RetryTimer
    from libra.services.stores import JobStore

logger = get_logger(__name__)

TIMEOUT_MESSAGE = "Job execution timed out."


class JobStatus(str, Enum):
    BACKLOG = "backlog"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DELAYED = "delayed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.BACKLOG: frozenset({JobStatus.PENDING}),
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.BACKLOG}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DELAYED, JobStatus.BACKLOG}
    ),
    JobStatus.FAILED: frozenset({JobStatus.BACKLOG}),
    JobStatus.DELAYED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
}

_OPTION_ALIASES: Mapping[str, tuple[str, ...]] = {
    "max_retries": ("max_retries", "maxRetries"),
    "retry_interval_ms": ("retry_interval_ms", "retryInterval", "retry_interval"),
    "timeout_ms": ("timeout_ms", "timeout"),
}


class JobStateError(LibraError):
    def __init__(self, job_id: str, current: JobStatus, target: JobStatus) -> None:
        super().__init__(
            f"Job {job_id} cannot move from {current.value} to {target.value}",
            code=ErrorCode.VALIDATION_ERROR,
            meta={"job_id": job_id, "from": current.value, "to": target.value},
        )


@dataclass(slots=True, frozen=True)
class JobOptions:
    max_retries: int = 3
    retry_interval_ms: int = 5_000
    timeout_ms: int = 60_000

    @classmethod
    def from_mapping(
        cls, raw: Mapping[str, Any] | None, *, defaults: JobOptions | None = None
    ) -> JobOptions:
        """Build options from camelCase or snake_case keys, falling back to ``defaults``."""

        base = defaults or cls()
        values = asdict(base)
        if raw:
            for field_name, aliases in _OPTION_ALIASES.items():
                for alias in aliases:
                    if raw.get(alias) is None:
                        continue
                    try:
                        values[field_name] = max(0, int(raw[alias]))
                    except (TypeError, ValueError) as exc:
                        raise JobValidationError(
                            f"Job option '{alias}' must be an integer",
                            meta={"option": alias},
                        ) from exc
                    break
        return cls(**values)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class JobDescriptor(BaseModel):
    """Submission contract for a job: ``{for, options?, payload, entityId?}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    for_: str = Field(alias="for", strict=True)
    payload: Any
    options: dict[str, Any] | None = None
    entity_id: str | None = Field(default=None, alias="entityId")

    @field_validator("for_")
    @classmethod
    def _ensure_queue_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("'for' must name a target queue")
        return stripped

    @field_validator("payload")
    @classmethod
    def _ensure_payload(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("payload is required")
        if isinstance(value, (str, bytes, list, tuple, dict, set)) and len(value) == 0:
            raise ValueError("payload must not be empty")
        return value

    @field_validator("entity_id", mode="before")
    @classmethod
    def _coerce_entity_id(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)


def validate_job_data(data: Any) -> JobDescriptor:
    """Validate a job descriptor, raising :class:`JobValidationError` on failure."""

    if data is None:
        raise JobValidationError("Job data is required")
    if isinstance(data, JobDescriptor):
        return data
    if not isinstance(data, Mapping):
        raise JobValidationError("Job data must be a mapping")
    try:
        return JobDescriptor.model_validate(dict(data))
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise JobValidationError("Invalid job data", meta={"errors": errors}) from exc


class Job:
    """A persisted unit of work owned by exactly one queue at a time."""

    def __init__(
        self,
        data: Mapping[str, Any] | JobDescriptor,
        *,
        job_id: str | None = None,
        store: JobStore | None = None,
        retry_timer: RetryTimer | None = None,
        persist: bool = True,
        defaults: JobOptions | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        descriptor = validate_job_data(data)
        self.id = job_id or str(uuid4())
        self.queue_name = descriptor.for_
        self.payload = descriptor.payload
        self.options = JobOptions.from_mapping(descriptor.options, defaults=defaults)
        self.entity_id = descriptor.entity_id
        self.status = JobStatus.BACKLOG
        self.retry_count = 0
        self.result: Any = None
        self.error: dict[str, Any] | None = None
        self.progress: Any = None
        self.queue: str | None = None
        self.origin: str | None = None
        self.persist = persist
        self._store = store
        self._retry_timer = retry_timer
        self._clock = clock
        now = clock()
        self.created_at = now
        self.updated_at = now
        self.finished_at: datetime | None = None

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        store: JobStore | None = None,
        retry_timer: RetryTimer | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> Job:
        """Rehydrate a job from a persisted snapshot."""

        job = cls(
            {
                "for": record["queue_name"],
                "payload": record.get("payload"),
                "options": record.get("options") or {},
                "entityId": record.get("entity_id"),
            },
            job_id=str(record["id"]),
            store=store,
            retry_timer=retry_timer,
            persist=True,
            clock=clock,
        )
        job.status = JobStatus(record.get("status") or JobStatus.BACKLOG.value)
        job.retry_count = int(record.get("retry_count") or 0)
        job.result = record.get("result")
        job.error = record.get("error")
        job.progress = record.get("progress")
        job.queue = record.get("queue")
        job.origin = record.get("origin")
        for attr in ("created_at", "updated_at", "finished_at"):
            value = record.get(attr)
            if isinstance(value, datetime):
                setattr(job, attr, ensure_utc(value))
        return job

    @property
    def timeout_s(self) -> float:
        return self.options.timeout_ms / 1000.0

    @property
    def retries_left(self) -> bool:
        return self.retry_count < self.options.max_retries

    @property
    def store(self) -> JobStore | None:
        return self._store

    @property
    def retry_timer(self) -> RetryTimer | None:
        return self._retry_timer

    def bind(
        self, *, store: JobStore | None = None, retry_timer: RetryTimer | None = None
    ) -> None:
        """Attach collaborators that were not known at construction time."""

        if store is not None and self._store is None:
            self._store = store
        if retry_timer is not None and self._retry_timer is None:
            self._retry_timer = retry_timer

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "status": self.status.value,
            "payload": self.payload,
            "options": self.options.as_dict(),
            "retry_count": self.retry_count,
            "result": self.result,
            "error": self.error,
            "progress": self.progress,
            "queue": self.queue,
            "origin": self.origin,
            "entity_id": self.entity_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }

    async def initialize(self) -> None:
        store = self._store
        if not self.persist or store is None:
            return
        try:
            await store.create(self.to_record())
        except Exception:
            logger.exception("Failed to persist job %s", self.id)
            raise

    async def pick_up(self, queue_name: str) -> None:
        await self._transition(JobStatus.PENDING, queue=queue_name)

    async def start_processing(self) -> None:
        await self._transition(JobStatus.PROCESSING)

    async def report_progress(self, value: Any) -> None:
        self.progress = value
        self.updated_at = self._clock()
        await self._write({"progress": value, "updated_at": self.updated_at})

    async def complete(self, result: Any = None) -> None:
        await self._transition(JobStatus.COMPLETED, result=result, finished_at=self._clock())

    async def fail(self, error: BaseException | str) -> bool:
        """Mark the job failed; returns ``True`` when a retry was scheduled."""

        message = str(error) or error.__class__.__name__
        await self._transition(JobStatus.FAILED, error={"message": message})
        if not self.retries_left:
            emit_job_event(
                logger,
                job_id=self.id,
                queue_name=self.queue_name,
                status="exhausted",
                retry_count=self.retry_count,
                error=message,
            )
            return False
        return self.schedule_retry()

    def schedule_retry(self) -> bool:
        """Schedule the deferred recycle of a failed job back to the backlog."""

        if self.status is not JobStatus.FAILED or not self.retries_left:
            return False
        if self._retry_timer is None:
            logger.warning("Job %s has retries left but no retry timer attached", self.id)
            return False
        self._retry_timer.schedule(self.id, self.options.retry_interval_ms, self._recycle)
        return True

    async def delay(self) -> None:
        await self._transition(JobStatus.DELAYED, error={"message": TIMEOUT_MESSAGE})

    async def set_origin(self, lane: str) -> None:
        self.origin = lane
        await self._write({"origin": lane})

    async def reset_to_backlog(self) -> None:
        """Return an interrupted job to the backlog (used when restoring after restart)."""

        await self._transition(JobStatus.BACKLOG)

    async def _recycle(self) -> None:
        if self.status is not JobStatus.FAILED:
            return
        await self._transition(JobStatus.BACKLOG, retry_count=self.retry_count + 1)

    async def _transition(self, target: JobStatus, **changes: Any) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise JobStateError(self.id, self.status, target)
        updated_at = self._clock()
        await self._write({"status": target.value, "updated_at": updated_at, **changes})
        self.status = target
        self.updated_at = updated_at
        for name, value in changes.items():
            setattr(self, name, value)
        emit_job_event(
            logger,
            job_id=self.id,
            queue_name=self.queue_name,
            status=target.value,
            retry_count=self.retry_count,
            error=(
                (self.error or {}).get("message")
                if target in (JobStatus.FAILED, JobStatus.DELAYED)
                else None
            ),
        )

    async def _write(self, changes: Mapping[str, Any]) -> None:
        store = self._store
        if not self.persist or store is None:
            return
        try:
            await store.update(self.id, dict(changes))
        except NotFoundError:
            logger.warning("Job %s has no stored record; keeping its in-memory state", self.id)
        except Exception:
            logger.exception("Failed to persist job %s transition", self.id)
            raise

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Job(id={self.id!r}, queue={self.queue_name!r}, status={self.status.value!r})"


__all__ = [
    "TIMEOUT_MESSAGE",
    "JobStatus",
    "JobOptions",
    "JobDescriptor",
    "JobStateError",
    "Job",
    "validate_job_data",
]
