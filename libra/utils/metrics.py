"""Shared Prometheus metrics helpers used across Libra."""

from __future__ import annotations

from collections.abc import Sequence
from threading import RLock
from typing import Final

from prometheus_client import CollectorRegistry, Counter, Histogram

__all__ = [
    "get_registry",
    "counter",
    "histogram",
    "reset_registry",
    "sample_value",
]


_DEFAULT_BUCKETS: Final[tuple[float, ...]] = (
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
)

_registry_lock = RLock()
_registry: CollectorRegistry = CollectorRegistry()
_counters: dict[tuple[str, tuple[str, ...]], Counter] = {}
_histograms: dict[tuple[str, tuple[str, ...]], Histogram] = {}


def get_registry() -> CollectorRegistry:
    """Return the shared Prometheus registry used for Libra metrics."""

    return _registry


def reset_registry() -> None:
    """Reset the registry and cached metric objects (used in tests)."""

    global _registry
    with _registry_lock:
        _registry = CollectorRegistry()
        _counters.clear()
        _histograms.clear()


def counter(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
) -> Counter:
    """Return (or create) a labelled Prometheus counter registered globally."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _counters.get(cache_key)
        if metric is None:
            metric = Counter(
                name,
                documentation,
                labelnames=labels,
                registry=_registry,
            )
            _counters[cache_key] = metric
        return metric


def histogram(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
    buckets: Sequence[float] | None = None,
) -> Histogram:
    """Return (or create) a labelled Prometheus histogram."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _histograms.get(cache_key)
        if metric is None:
            metric = Histogram(
                name,
                documentation,
                labelnames=labels,
                buckets=tuple(buckets or _DEFAULT_BUCKETS),
                registry=_registry,
            )
            _histograms[cache_key] = metric
        return metric


def sample_value(name: str, labels: dict[str, str] | None = None) -> float | None:
    """Read a single sample from the shared registry."""

    return _registry.get_sample_value(name, labels or {})
