"""Bundled provider agents."""

from libra.integrations.agents.kitsu import KitsuAgent
from libra.integrations.agents.mangadex import MangaDexAgent

__all__ = ["KitsuAgent", "MangaDexAgent"]
