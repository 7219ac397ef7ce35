"""Structured logging helpers for orchestrator components."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from libra.logging_events import log_event
from libra.utils.metrics import counter


def format_datetime(value: datetime | None) -> str | None:
    """Return an ISO formatted timestamp for ``value`` if present."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat()


def emit_job_event(
    logger: Any,
    *,
    job_id: str,
    queue_name: str,
    status: str,
    retry_count: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_id": job_id,
        "queue": queue_name,
        "status": status,
    }
    if retry_count is not None:
        payload["retry_count"] = retry_count
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.job", payload, track_metric=True)


def emit_lane_event(
    logger: Any,
    *,
    queue_name: str,
    lanes: Mapping[str, int],
    promoted: str | None = None,
    moved: int = 0,
) -> None:
    payload: dict[str, Any] = {
        "queue": queue_name,
        "status": "tick",
        "moved": moved,
        "meta": {"lanes": dict(lanes)},
    }
    if promoted is not None:
        payload["promoted"] = promoted
    _emit_event(logger, "orchestrator.lanes", payload)


def emit_dispatch_event(
    logger: Any,
    *,
    job_id: str,
    queue_name: str,
    status: str,
    worker: str | None = None,
    duration_ms: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_id": job_id,
        "queue": queue_name,
        "status": status,
    }
    if worker is not None:
        payload["worker"] = worker
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.dispatch", payload, track_metric=True)


def emit_scheduler_event(
    logger: Any,
    *,
    scheduler: str,
    status: str,
    next_run: datetime | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {"component": scheduler, "status": status}
    formatted = format_datetime(next_run)
    if formatted is not None:
        payload["next_run"] = formatted
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.scheduler", payload, track_metric=True)


def emit_timer_event(
    logger: Any,
    *,
    job_id: str,
    status: str,
    delay_ms: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {"entity_id": job_id, "status": status}
    if delay_ms is not None:
        payload["delay_ms"] = delay_ms
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.retry_timer", payload, track_metric=True)


def _emit_event(
    logger: Any,
    event: str,
    payload: dict[str, Any],
    *,
    track_metric: bool = False,
) -> None:
    log_event(logger, event, **payload)
    if track_metric:
        _increment_metric(event, payload.get("status"))


def _increment_metric(event: str, status: str | None) -> None:
    counter(
        "libra_orchestrator_events_total",
        "Orchestrator events grouped by event name and status.",
        label_names=("event", "status"),
    ).labels(event=event, status=status or "total").inc()


__all__ = [
    "format_datetime",
    "emit_job_event",
    "emit_lane_event",
    "emit_dispatch_event",
    "emit_scheduler_event",
    "emit_timer_event",
]
