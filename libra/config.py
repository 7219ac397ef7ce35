"""Runtime configuration for the Libra orchestrator and agents."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "DEFAULT_DATABASE_URL",
    "QueueConfig",
    "AgentPolicyConfig",
    "FanoutConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "LibraConfig",
    "load_runtime_env",
    "get_runtime_env",
    "override_runtime_env",
    "get_env",
    "load_config",
]

DEFAULT_DATABASE_URL = "sqlite:///./libra.db"

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    env = get_runtime_env()
    return env.get(name, default)


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


@dataclass(slots=True, frozen=True)
class QueueConfig:
    tick_interval_s: float = 5.0
    max_retries: int = 3
    retry_interval_ms: int = 5_000
    timeout_ms: int = 60_000
    shutdown_grace_ms: int = 2_000

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> QueueConfig:
        return cls(
            tick_interval_s=_bounded_float(
                _env_value(env, "LIBRA_QUEUE_TICK_INTERVAL_S"), default=5.0, minimum=0.01
            ),
            max_retries=_bounded_int(
                _env_value(env, "LIBRA_JOB_MAX_RETRIES"), default=3, minimum=0
            ),
            retry_interval_ms=_bounded_int(
                _env_value(env, "LIBRA_JOB_RETRY_INTERVAL_MS"), default=5_000, minimum=0
            ),
            timeout_ms=_bounded_int(
                _env_value(env, "LIBRA_JOB_TIMEOUT_MS"), default=60_000, minimum=1
            ),
            shutdown_grace_ms=_bounded_int(
                _env_value(env, "LIBRA_SHUTDOWN_GRACE_MS"), default=2_000, minimum=0
            ),
        )


@dataclass(slots=True, frozen=True)
class AgentPolicyConfig:
    max_errors: int = 5
    error_window_s: float = 600.0
    cooldown_s: float = 600.0
    cache_enabled: bool = False
    cache_ttl_s: int = 86_400
    http_timeout_ms: int = 10_000

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> AgentPolicyConfig:
        return cls(
            max_errors=_bounded_int(
                _env_value(env, "LIBRA_AGENT_MAX_ERRORS"), default=5, minimum=1
            ),
            error_window_s=_bounded_float(
                _env_value(env, "LIBRA_AGENT_ERROR_WINDOW_S"), default=600.0, minimum=1.0
            ),
            cooldown_s=_bounded_float(
                _env_value(env, "LIBRA_AGENT_COOLDOWN_S"), default=600.0, minimum=0.0
            ),
            cache_enabled=_as_bool(_env_value(env, "LIBRA_AGENT_CACHE_ENABLED"), default=False),
            cache_ttl_s=_bounded_int(
                _env_value(env, "LIBRA_AGENT_CACHE_TTL_S"), default=86_400, minimum=1
            ),
            http_timeout_ms=_bounded_int(
                _env_value(env, "LIBRA_AGENT_HTTP_TIMEOUT_MS"),
                default=10_000,
                minimum=100,
                maximum=120_000,
            ),
        )


@dataclass(slots=True, frozen=True)
class FanoutConfig:
    retry_delay_ms: int = 1_000
    fuzzy_threshold: float = 0.3
    year_tolerance: int = 2

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> FanoutConfig:
        return cls(
            retry_delay_ms=_bounded_int(
                _env_value(env, "LIBRA_FANOUT_RETRY_DELAY_MS"), default=1_000, minimum=0
            ),
            fuzzy_threshold=_bounded_float(
                _env_value(env, "LIBRA_FUZZY_THRESHOLD"), default=0.3, minimum=0.0, maximum=1.0
            ),
            year_tolerance=_bounded_int(
                _env_value(env, "LIBRA_YEAR_TOLERANCE"), default=2, minimum=0
            ),
        )


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> DatabaseConfig:
        raw = (_env_value(env, "DATABASE_URL") or "").strip()
        return cls(url=raw or DEFAULT_DATABASE_URL)


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        level = (_env_value(env, "LIBRA_LOG_LEVEL") or "INFO").strip().upper() or "INFO"
        log_file = (_env_value(env, "LIBRA_LOG_FILE") or "").strip() or None
        return cls(level=level, log_file=log_file)


@dataclass(slots=True, frozen=True)
class LibraConfig:
    queue: QueueConfig
    agents: AgentPolicyConfig
    fanout: FanoutConfig
    database: DatabaseConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LibraConfig:
        return cls(
            queue=QueueConfig.from_env(env),
            agents=AgentPolicyConfig.from_env(env),
            fanout=FanoutConfig.from_env(env),
            database=DatabaseConfig.from_env(env),
            logging=LoggingConfig.from_env(env),
        )


def load_config(runtime_env: Mapping[str, Any] | None = None) -> LibraConfig:
    """Build the aggregated configuration from ``runtime_env`` or the process env."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    return LibraConfig.from_env(env)
