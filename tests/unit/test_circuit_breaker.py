"""Tests for the automatic-sync circuit breaker."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dispatch_sync.sync.circuit_breaker import BreakerState, CircuitBreaker

if TYPE_CHECKING:
    from conftest import FakeClock


def _make_breaker(clock: FakeClock, **kwargs: float) -> CircuitBreaker:
    return CircuitBreaker(
        int(kwargs.get("failure_threshold", 3)),
        kwargs.get("initial_cooldown", 30.0),
        kwargs.get("max_cooldown", 300.0),
        clock=clock,
    )


class TestTripping:
    def test_closed_initially(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        assert breaker.state == BreakerState.CLOSED
        assert breaker.should_allow()
        assert breaker.remaining_cooldown == 0.0

    def test_opens_after_threshold(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.is_blocking
        assert not breaker.should_allow()
        assert breaker.remaining_cooldown == pytest.approx(30.0)

    def test_success_resets_count(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 1

    def test_invalid_threshold(self, clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            CircuitBreaker(0, clock=clock)


class TestCooldown:
    def test_half_open_after_cooldown(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(30.0)
        assert not breaker.is_blocking
        assert breaker.should_allow()
        assert breaker.state == BreakerState.HALF_OPEN

    def test_probe_success_closes(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31.0)
        breaker.should_allow()
        breaker.record_success()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.trip_count == 0

    def test_probe_failure_doubles_cooldown(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31.0)
        breaker.should_allow()
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.current_cooldown == 60.0

    def test_cooldown_capped(self, clock: FakeClock) -> None:
        breaker = _make_breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        for _ in range(10):
            clock.advance(breaker.current_cooldown)
            breaker.should_allow()
            breaker.record_failure()
        assert breaker.current_cooldown == 300.0

    def test_state_changes_reported(self, clock: FakeClock) -> None:
        changes: list[BreakerState] = []
        breaker = CircuitBreaker(1, 10.0, clock=clock, on_change=changes.append)
        breaker.record_failure()
        clock.advance(10.0)
        breaker.should_allow()
        breaker.record_success()
        assert changes == [BreakerState.OPEN, BreakerState.HALF_OPEN, BreakerState.CLOSED]
