"""Bootstrap helpers wiring recurring work units at startup."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from libra.logging import get_logger
from libra.orchestrator.queue import Queue, QueueMode
from libra.orchestrator.queue_manager import QueueManager
from libra.orchestrator.scheduler import Scheduler
from libra.workers.base import Worker

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class RecurringUnit:
    """Declarative description of a queue driven by a cron scheduler.

    Units with a ``job_template`` submit a fresh job on every trigger; units
    without one drain whatever was enqueued by other producers.
    """

    queue_name: str
    worker: Worker
    scheduler_name: str
    cron: str
    job_template: Mapping[str, Any] | None = None
    mode: QueueMode | None = None
    persist: bool = False


@dataclass(slots=True)
class RecurringRuntime:
    queues: dict[str, Queue]
    schedulers: dict[str, Scheduler]


def bootstrap_recurring(
    queue_manager: QueueManager, units: Iterable[RecurringUnit]
) -> RecurringRuntime:
    """Create the queue/scheduler pair of every unit. Nothing is started."""

    runtime = RecurringRuntime(queues={}, schedulers={})
    for unit in units:
        if unit.job_template is None:
            queue, scheduler = queue_manager.setup_queue_with_scheduler(
                unit.queue_name,
                unit.worker,
                unit.scheduler_name,
                unit.cron,
                mode=unit.mode or QueueMode.IMMEDIATE,
            )
        else:
            queue, scheduler = queue_manager.setup_queue_with_scheduler_with_job(
                unit.queue_name,
                unit.worker,
                unit.scheduler_name,
                unit.cron,
                unit.job_template,
                mode=unit.mode or QueueMode.CALLED,
                persist=unit.persist,
            )
        runtime.queues[queue.name] = queue
        runtime.schedulers[scheduler.name] = scheduler
        logger.info(
            "Recurring unit wired",
            extra={
                "event": "orchestrator.bootstrap",
                "queue": queue.name,
                "scheduler": scheduler.name,
                "cron": unit.cron,
            },
        )
    return runtime


__all__ = ["RecurringUnit", "RecurringRuntime", "bootstrap_recurring"]
