"""Time-invalidated response cache for agent queries."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
import hashlib
import json
import logging
from typing import Any

from libra.logging import get_logger
from libra.logging_events import log_event
from libra.services.stores import CacheStore
from libra.utils.time import ensure_utc, now_utc

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_S = 86_400


def build_cache_key(query: Any) -> str:
    """Deterministic content hash of a logical query (never the raw URL)."""

    serialised = json.dumps(
        query, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    digest = hashlib.blake2b(serialised.encode("utf-8"), digest_size=16)
    return digest.hexdigest()


class AgentCache:
    """Per-agent cache backed by a :class:`CacheStore`.

    Entries expire purely by age; there is no explicit invalidation. Store
    failures are logged and treated as a miss (fail open).
    """

    def __init__(
        self,
        caller_id: str,
        store: CacheStore | None = None,
        *,
        enabled: bool = False,
        default_ttl_s: int = DEFAULT_CACHE_TTL_S,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.caller_id = caller_id
        self._store = store
        self._enabled = enabled
        self._default_ttl = max(1, int(default_ttl_s))
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled and self._store is not None

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def attach_store(self, store: CacheStore) -> None:
        self._store = store

    async def get(self, type_: str, query: Any) -> Any | None:
        store = self._store
        if not self._enabled or store is None:
            return None
        key = build_cache_key(query)
        try:
            record = await store.get(self.caller_id, type_, key)
        except Exception:
            logger.warning("Cache read failed for %s/%s", self.caller_id, type_, exc_info=True)
            self._log_operation("get", "error", type_=type_, key_hash=key)
            return None
        if record is None:
            self._log_operation("get", "miss", type_=type_, key_hash=key)
            return None
        ttl = int(record.get("ttl") or self._default_ttl)
        updated_at = record.get("updated_at")
        if not isinstance(updated_at, datetime):
            return None
        if ensure_utc(updated_at) + timedelta(seconds=ttl) < ensure_utc(self._clock()):
            self._log_operation("get", "expired", type_=type_, key_hash=key)
            return None
        self._log_operation("get", "hit", type_=type_, key_hash=key)
        return record.get("value")

    async def set(self, type_: str, query: Any, value: Any, *, ttl_s: int | None = None) -> None:
        store = self._store
        if not self._enabled or store is None:
            return
        key = build_cache_key(query)
        ttl = int(ttl_s) if ttl_s is not None else self._default_ttl
        try:
            await store.upsert(self.caller_id, type_, key, value, ttl)
        except Exception:
            logger.warning("Cache write failed for %s/%s", self.caller_id, type_, exc_info=True)
            self._log_operation("set", "error", type_=type_, key_hash=key)
            return
        self._log_operation("set", "stored", type_=type_, key_hash=key)

    def _log_operation(self, operation: str, status: str, *, type_: str, key_hash: str) -> None:
        log_event(
            logger,
            "agent.cache",
            level=logging.DEBUG,
            component="agent_cache",
            dependency=self.caller_id,
            operation=operation,
            status=status,
            entity=type_,
            key_hash=key_hash,
        )


__all__ = ["DEFAULT_CACHE_TTL_S", "AgentCache", "build_cache_key"]
