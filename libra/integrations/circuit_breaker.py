"""Sliding-window circuit breaker deactivating misbehaving agents.

State lives in a :class:`pybreaker.CircuitBreaker`; the rolling error window
decides when to open it and the cooldown decides when to close it again.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
import time

import pybreaker

from libra.logging import get_logger
from libra.logging_events import log_event
from libra.utils.metrics import counter

logger = get_logger(__name__)

DEFAULT_MAX_ERRORS = 5
DEFAULT_WINDOW_S = 600.0
DEFAULT_COOLDOWN_S = 600.0


class _TransitionListener(pybreaker.CircuitBreakerListener):
    def __init__(self, breaker: CircuitBreaker) -> None:
        self._breaker = breaker

    def state_change(self, cb, old_state, new_state) -> None:
        state = getattr(new_state, "name", str(new_state))
        errors = len(self._breaker._errors)
        log_event(
            logger,
            "agent.circuit",
            component="circuit_breaker",
            dependency=self._breaker.name,
            status=state,
            errors=errors,
            meta={"max_errors": self._breaker.max_errors, "window_s": self._breaker.window_s},
        )
        counter(
            "libra_agent_circuit_transitions_total",
            "Agent circuit breaker state transitions.",
            label_names=("agent", "state"),
        ).labels(agent=self._breaker.name, state=state).inc()


class CircuitBreaker:
    """Open once more than ``max_errors`` errors land within ``window_s``.

    An open breaker reports ``is_active == False`` until ``cooldown_s`` has
    elapsed; the next read after that closes it again and clears the window.
    """

    def __init__(
        self,
        name: str,
        *,
        max_errors: int = DEFAULT_MAX_ERRORS,
        window_s: float = DEFAULT_WINDOW_S,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_errors = max(1, int(max_errors))
        self.window_s = float(window_s)
        self.cooldown_s = float(cooldown_s)
        self._clock = clock
        self._errors: deque[float] = deque()
        self._opened_at: float | None = None
        self._state = pybreaker.CircuitBreaker(
            fail_max=self.max_errors + 1,
            reset_timeout=self.cooldown_s,
            name=name,
            listeners=[_TransitionListener(self)],
        )

    @property
    def state(self) -> str:
        return self._state.current_state

    @property
    def is_active(self) -> bool:
        if self._state.current_state != pybreaker.STATE_OPEN:
            return True
        opened_at = self._opened_at
        if opened_at is not None and self._clock() - opened_at < self.cooldown_s:
            return False
        self._errors.clear()
        self._opened_at = None
        self._state.close()
        return True

    @property
    def error_count(self) -> int:
        self._prune(self._clock())
        return len(self._errors)

    def record_error(self) -> bool:
        """Record one failure; returns ``True`` if this error opened the breaker."""

        now = self._clock()
        self._errors.append(now)
        self._prune(now)
        if self._state.current_state == pybreaker.STATE_OPEN:
            return False
        if len(self._errors) <= self.max_errors:
            return False
        self._opened_at = now
        self._state.open()
        return True

    def reset(self) -> None:
        self._errors.clear()
        self._opened_at = None
        if self._state.current_state != pybreaker.STATE_CLOSED:
            self._state.close()

    def _prune(self, now: float) -> None:
        horizon = now - self.window_s
        while self._errors and self._errors[0] <= horizon:
            self._errors.popleft()


__all__ = [
    "DEFAULT_MAX_ERRORS",
    "DEFAULT_WINDOW_S",
    "DEFAULT_COOLDOWN_S",
    "CircuitBreaker",
]
