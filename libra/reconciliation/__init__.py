"""Field-level fusion of per-agent records into unified entities."""

from .chapters import average_release_interval, chapters_to_unified
from .manga import compare_update_mangas, mangas_to_unified, validate_manga_data
from .strategies import defaults_deep, merge_records

__all__ = [
    "average_release_interval",
    "chapters_to_unified",
    "compare_update_mangas",
    "defaults_deep",
    "mangas_to_unified",
    "merge_records",
    "validate_manga_data",
]
