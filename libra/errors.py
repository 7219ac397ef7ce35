"""Error taxonomy shared by every Libra component."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any

__all__ = [
    "ErrorCode",
    "LibraError",
    "ConfigurationError",
    "DuplicateNameError",
    "NotFoundError",
    "JobValidationError",
]


class ErrorCode(str, Enum):
    """Stable error codes attached to every :class:`LibraError`."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    DUPLICATE_NAME = "DUPLICATE_NAME"
    NOT_FOUND = "NOT_FOUND"
    NO_AVAILABLE_WORKER = "NO_AVAILABLE_WORKER"
    JOB_TIMEOUT = "JOB_TIMEOUT"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LibraError(Exception):
    """Base exception for Libra specific errors."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.meta = meta

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.meta:
            payload["meta"] = dict(self.meta)
        return payload


class ConfigurationError(LibraError):
    """Raised synchronously at setup time for invalid wiring."""

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.CONFIGURATION_ERROR, meta=meta)


class DuplicateNameError(ConfigurationError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' already exists", meta={"kind": kind, "name": name})
        self.code = ErrorCode.DUPLICATE_NAME
        self.kind = kind
        self.name = name


class NotFoundError(LibraError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(
            f"{kind} '{name}' does not exist",
            code=ErrorCode.NOT_FOUND,
            meta={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class JobValidationError(LibraError, ValueError):
    """Raised when a job descriptor fails validation."""

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION_ERROR, meta=meta)
