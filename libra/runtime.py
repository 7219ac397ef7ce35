"""Construction and lifecycle of a complete Libra runtime."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from libra.config import LibraConfig, load_config
from libra.integrations.agent import Agent
from libra.integrations.agents_manager import AgentsManager
from libra.logging import configure_logging, get_logger
from libra.orchestrator.bootstrap import RecurringRuntime, RecurringUnit, bootstrap_recurring
from libra.orchestrator.queue import QueueMode
from libra.orchestrator.queue_manager import QueueManager
from libra.orchestrator.scheduler import SchedulerManager
from libra.orchestrator.timer import RetryTimer
from libra.reconciliation.assets import AssetDownloader
from libra.services.entity_jobs import EntityJobService
from libra.services.library import LibraryService
from libra.services.search import SearchService
from libra.services.stores import CacheStore, EntityJobStore, EntityStore, JobStore
from libra.workers.chapter_download_worker import ChapterDownloadWorker, PageSink
from libra.workers.compute_reading_worker import ComputeReadingWorker
from libra.workers.import_worker import MangaImportWorker
from libra.workers.library_update_worker import LibraryUpdateWorker
from libra.workers.maintenance_worker import MaintenanceWorker
from libra.workers.scrobblers_worker import ScrobblersWorker

logger = get_logger(__name__)

MANGA_IMPORT_QUEUE = "mangaImportQueue"
CHAPTER_DOWNLOAD_QUEUE = "chapterDownloadQueue"
MAINTENANCE_QUEUE = "maintenanceQueue"
LIBRARY_UPDATE_QUEUE = "libraryUpdateQueue"
SCROBBLERS_QUEUE = "scrobblersQueue"
COMPUTE_READING_QUEUE = "computeReadingQueue"

_MINUTE_MS = 60_000


class Stores(Protocol):
    jobs: JobStore
    entities: EntityStore
    entity_jobs: EntityJobStore
    cache: CacheStore


@dataclass(slots=True)
class LibraRuntime:
    config: LibraConfig
    stores: Stores
    retry_timer: RetryTimer
    agents: AgentsManager
    scheduler_manager: SchedulerManager
    queue_manager: QueueManager
    entity_jobs: EntityJobService
    library: LibraryService
    search: SearchService
    recurring: RecurringRuntime | None = field(default=None)

    def default_units(
        self, *, page_sink: PageSink | None = None, languages: Sequence[str] = ()
    ) -> list[RecurringUnit]:
        """The standard set of library queues and their schedules."""

        units = [
            RecurringUnit(
                MANGA_IMPORT_QUEUE,
                MangaImportWorker(self.library),
                "mangaImportScheduler",
                "*/10 * * * * *",
            ),
            RecurringUnit(
                MAINTENANCE_QUEUE,
                MaintenanceWorker(
                    self.entity_jobs,
                    self.stores.entities,
                    live_jobs=self.queue_manager.active_job_ids,
                ),
                "maintenanceScheduler",
                "*/11 * * * *",
                job_template=_template(MAINTENANCE_QUEUE, "maintenance", retries=1),
            ),
            RecurringUnit(
                LIBRARY_UPDATE_QUEUE,
                LibraryUpdateWorker(self.library),
                "libraryUpdateScheduler",
                "0 * * * *",
                job_template=_template(LIBRARY_UPDATE_QUEUE, "library-update", retries=1),
                mode=QueueMode.CALLED,
                persist=True,
            ),
            RecurringUnit(
                SCROBBLERS_QUEUE,
                ScrobblersWorker(self.agents),
                "scrobblersScheduler",
                "10 * * * *",
                job_template=_template(
                    SCROBBLERS_QUEUE, "scrobblers", retries=1, retry_interval_ms=10 * _MINUTE_MS
                ),
            ),
            RecurringUnit(
                COMPUTE_READING_QUEUE,
                ComputeReadingWorker(self.stores.entities),
                "computeReadingScheduler",
                "*/9 * * * *",
                job_template=_template(COMPUTE_READING_QUEUE, "compute-reading", retries=1),
            ),
        ]
        if page_sink is not None:
            units.append(
                RecurringUnit(
                    CHAPTER_DOWNLOAD_QUEUE,
                    ChapterDownloadWorker(
                        self.agents,
                        self.stores.entities,
                        self.entity_jobs,
                        page_sink,
                        languages=languages,
                    ),
                    "chapterDownloadScheduler",
                    "*/60 * * * * *",
                )
            )
        return units

    async def start(self, units: Iterable[RecurringUnit] = ()) -> None:
        """Wire ``units``, restore unfinished jobs and start every timer."""

        self.recurring = bootstrap_recurring(self.queue_manager, units)
        for queue_name in self.recurring.queues:
            await self.queue_manager.restore_jobs(queue_name)
        self.queue_manager.start()
        self.scheduler_manager.start_all()
        logger.info(
            "Libra runtime started with %d queue(s) and %d agent(s)",
            len(self.recurring.queues),
            len(self.agents.agents),
        )

    async def stop(self) -> None:
        await self.scheduler_manager.stop_all()
        await self.queue_manager.stop()
        logger.info("Libra runtime stopped")


def _template(
    queue_name: str, task: str, *, retries: int, retry_interval_ms: int = _MINUTE_MS
) -> dict[str, Any]:
    return {
        "for": queue_name,
        "options": {
            "maxRetries": retries,
            "retryInterval": retry_interval_ms,
            "timeout": 60 * _MINUTE_MS,
        },
        "payload": {"task": task},
    }


def _default_stores() -> Stores:
    from libra.db import init_db
    from libra.services.sql_store import SqlStores

    init_db()
    return SqlStores()


def build_runtime(
    config: LibraConfig | None = None,
    *,
    agents: Iterable[Agent] = (),
    stores: Stores | None = None,
    downloader: AssetDownloader | None = None,
    chapter_lang: str | None = None,
    setup_logging: bool = False,
) -> LibraRuntime:
    """Assemble every service around ``stores`` (SQL stores by default)."""

    config = config or load_config()
    if setup_logging:
        configure_logging(config.logging.level, config.logging.log_file)
    stores = stores if stores is not None else _default_stores()

    manager = AgentsManager(config.fanout)
    for agent in agents:
        manager.register(agent)
    manager.set_cache_mode(config.agents.cache_enabled, stores.cache)

    retry_timer = RetryTimer()
    scheduler_manager = SchedulerManager()
    queue_manager = QueueManager(
        scheduler_manager=scheduler_manager,
        job_store=stores.jobs,
        retry_timer=retry_timer,
        config=config.queue,
    )
    entity_jobs = EntityJobService(
        jobs=stores.jobs, links=stores.entity_jobs, entities=stores.entities
    )
    library = LibraryService(
        agents=manager,
        entities=stores.entities,
        entity_jobs=entity_jobs,
        downloader=downloader,
        chapter_lang=chapter_lang,
    )
    return LibraRuntime(
        config=config,
        stores=stores,
        retry_timer=retry_timer,
        agents=manager,
        scheduler_manager=scheduler_manager,
        queue_manager=queue_manager,
        entity_jobs=entity_jobs,
        library=library,
        search=SearchService(manager, year_difference=config.fanout.year_tolerance),
    )


__all__ = [
    "CHAPTER_DOWNLOAD_QUEUE",
    "COMPUTE_READING_QUEUE",
    "LIBRARY_UPDATE_QUEUE",
    "LibraRuntime",
    "MAINTENANCE_QUEUE",
    "MANGA_IMPORT_QUEUE",
    "SCROBBLERS_QUEUE",
    "Stores",
    "build_runtime",
]
