"""Structured log events emitted by the orchestrator, the agents and the library.

Every event name is registered here so log shippers can rely on a closed set
of names; emitting an unknown name is a programming error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

EVENTS: dict[str, str] = {
    "orchestrator.job": "A job changed status.",
    "orchestrator.lanes": "A queue ran one lane-engine tick.",
    "orchestrator.dispatch": "A job was handed to a worker or came back from it.",
    "orchestrator.scheduler": "A scheduler started, fired, stopped or was destroyed.",
    "orchestrator.retry_timer": "A failed job was scheduled for, or returned to, the backlog.",
    "agent.call": "One raw provider call finished.",
    "agent.cache": "An agent cache lookup or write.",
    "agent.circuit": "An agent circuit breaker opened or closed.",
    "agents.fanout": "A fan-out across agents finished.",
    "library.import": "A manga was imported or refreshed.",
    "library.reading": "Reading progress was recomputed.",
    "maintenance.sweep": "The maintenance sweep finished.",
    "database.ready": "The SQL engine was created and its tables ensured.",
}


def register_event(name: str, description: str) -> None:
    """Add ``name`` to the event registry (for agents shipped outside Libra)."""

    if not isinstance(name, str) or not name.strip():
        raise ValueError("event must be a non-empty string")
    EVENTS.setdefault(name, description)


_JSON_PRIMITIVES = (str, int, float, bool, type(None))


def _validate_flat_value(name: str, value: Any) -> None:
    if isinstance(value, _JSON_PRIMITIVES):
        return
    raise TypeError(f"Field '{name}' must be a flat JSON-compatible value")


def _ensure_meta(meta: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    if meta is None:
        return None
    if not isinstance(meta, Mapping):
        raise TypeError("meta must be a mapping if provided")
    meta_dict = dict(meta)
    _validate_json_payload(meta_dict, path="meta")
    return meta_dict


def _validate_json_payload(value: Any, *, path: str) -> None:
    if isinstance(value, _JSON_PRIMITIVES):
        return
    if isinstance(value, Mapping):
        for key, nested in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Keys in '{path}' must be strings")
            _validate_json_payload(nested, path=f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for index, nested in enumerate(value):
            _validate_json_payload(nested, path=f"{path}[{index}]")
        return
    raise TypeError(f"Unsupported value in '{path}': {type(value).__name__}")


def log_event(logger: Any, event: str, /, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a structured log event.

    Top-level ``fields`` must be flat JSON primitives so log shippers can index
    them directly; anything nested goes into ``meta``.
    """

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")
    if event not in EVENTS:
        raise ValueError(f"Unknown log event '{event}'")

    meta = _ensure_meta(fields.pop("meta", None))

    extra: dict[str, Any] = {"event": event}
    for name, value in fields.items():
        _validate_flat_value(name, value)
        extra[name] = value
    if meta is not None:
        extra["meta"] = meta

    logger.log(level, event, extra=extra)
