"""Workers executing the jobs of the library queues."""

from .base import Worker
from .chapter_download_worker import ChapterDownloadWorker, PageSink
from .compute_reading_worker import ComputeReadingWorker
from .import_worker import MangaImportWorker
from .library_update_worker import LibraryUpdateWorker
from .maintenance_worker import MaintenanceWorker
from .scrobblers_worker import ScrobblersWorker

__all__ = [
    "ChapterDownloadWorker",
    "ComputeReadingWorker",
    "LibraryUpdateWorker",
    "MaintenanceWorker",
    "MangaImportWorker",
    "PageSink",
    "ScrobblersWorker",
    "Worker",
]
