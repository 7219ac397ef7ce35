from __future__ import annotations

from libra.integrations.circuit_breaker import CircuitBreaker
from libra.utils.metrics import sample_value


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_breaker_opens_once_errors_exceed_threshold() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("mangadex", max_errors=3, window_s=60, cooldown_s=30, clock=clock)

    assert [breaker.record_error() for _ in range(3)] == [False, False, False]
    assert breaker.is_active

    assert breaker.record_error() is True
    assert not breaker.is_active
    assert breaker.state == "open"
    assert breaker.record_error() is False
    assert (
        sample_value(
            "libra_agent_circuit_transitions_total", {"agent": "mangadex", "state": "open"}
        )
        == 1.0
    )


def test_breaker_closes_after_cooldown() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("kitsu", max_errors=1, window_s=60, cooldown_s=30, clock=clock)
    breaker.record_error()
    breaker.record_error()
    assert not breaker.is_active

    clock.now = 29.0
    assert not breaker.is_active

    clock.now = 30.0
    assert breaker.is_active
    assert breaker.state == "closed"
    assert breaker.error_count == 0
    assert (
        sample_value("libra_agent_circuit_transitions_total", {"agent": "kitsu", "state": "closed"})
        == 1.0
    )


def test_errors_outside_window_are_forgotten() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("slow", max_errors=2, window_s=10, cooldown_s=30, clock=clock)
    breaker.record_error()
    breaker.record_error()

    clock.now = 10.5
    assert breaker.error_count == 0
    assert breaker.record_error() is False
    assert breaker.is_active


def test_reset_clears_state() -> None:
    breaker = CircuitBreaker("any", max_errors=1)
    breaker.record_error()
    breaker.record_error()

    breaker.reset()

    assert breaker.is_active
    assert breaker.error_count == 0
