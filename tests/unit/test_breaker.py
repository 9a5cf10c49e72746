"""Circuit breaker and error tracker tests."""

from __future__ import annotations

import pytest

from recallguard.config import CircuitBreakerConfig
from recallguard.errors import CircuitOpenError
from recallguard.errors import MemoryErrorKind
from recallguard.resilience import CircuitBreakerRegistry
from recallguard.resilience import ErrorTracker
from tests.helpers.fakes import FakeClock


@pytest.fixture()
def breakers(clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(CircuitBreakerConfig(), clock=clock)


def _trip(breakers: CircuitBreakerRegistry, key: str, times: int = 5) -> None:
    for _ in range(times):
        breakers.record_failure(key)


class TestOpening:
    def test_unknown_key_is_closed(self, breakers):
        breakers.check("openai")
        assert breakers.state("openai") is None

    def test_stays_closed_below_threshold(self, breakers):
        _trip(breakers, "openai", 4)
        breakers.check("openai")
        assert breakers.state("openai").failure_count == 4
        assert not breakers.state("openai").is_open

    def test_opens_at_threshold(self, breakers, clock):
        _trip(breakers, "openai")
        state = breakers.state("openai")
        assert state.is_open
        assert state.next_attempt_time == clock.now + 60.0
        assert breakers.open_breakers() == ["openai"]

    def test_open_breaker_rejects(self, breakers):
        _trip(breakers, "database")
        with pytest.raises(CircuitOpenError) as exc_info:
            breakers.check("database")
        error = exc_info.value
        assert error.dependency == "database"
        assert error.kind is MemoryErrorKind.STORE_CONNECTION
        assert error.context["failure_count"] == 5

    def test_success_resets_failures(self, breakers):
        _trip(breakers, "openai", 4)
        breakers.record_success("openai")
        breakers.record_failure("openai")
        assert breakers.state("openai").failure_count == 1
        assert not breakers.state("openai").is_open

    def test_breakers_are_independent(self, breakers):
        _trip(breakers, "openai")
        breakers.check("database")
        breakers.check("vector_search")


class TestHalfOpen:
    def test_rejects_until_recovery(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(59.0)
        with pytest.raises(CircuitOpenError):
            breakers.check("openai")

    def test_trial_allowed_after_recovery(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(60.0)
        breakers.check("openai")
        assert breakers.status()["openai"]["half_open"] is True

    def test_concurrent_calls_rejected_during_trial(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(60.0)
        breakers.check("openai")
        with pytest.raises(CircuitOpenError):
            breakers.check("openai")

    def test_trial_success_closes(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(60.0)
        breakers.check("openai")
        breakers.record_success("openai")
        breakers.check("openai")
        state = breakers.state("openai")
        assert state.failure_count == 0
        assert not state.is_open

    def test_trial_failure_reopens(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(60.0)
        breakers.check("openai")
        breakers.record_failure("openai")
        assert breakers.state("openai").is_open
        with pytest.raises(CircuitOpenError):
            breakers.check("openai")

    def test_stale_trial_is_replaced(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(60.0)
        breakers.check("openai")
        clock.advance(60.0)
        breakers.check("openai")


class TestAdmin:
    def test_reset_closes(self, breakers):
        _trip(breakers, "openai")
        breakers.reset("openai")
        breakers.check("openai")
        assert breakers.state("openai").failure_count == 0

    def test_status_snapshot(self, breakers, clock):
        _trip(breakers, "openai")
        clock.advance(15.0)
        status = breakers.status()
        assert status["openai"]["is_open"] is True
        assert status["openai"]["failure_count"] == 5
        assert status["openai"]["time_until_recovery"] == pytest.approx(45.0)
        assert status["openai"]["last_failure_time"].endswith("+00:00")

    def test_clear(self, breakers):
        _trip(breakers, "openai")
        breakers.clear()
        assert breakers.status() == {}


class TestErrorTracker:
    def test_counts_per_dependency(self, clock):
        tracker = ErrorTracker(clock=clock)
        assert tracker.increment("openai") == 1
        assert tracker.increment("openai") == 2
        assert tracker.increment("database") == 1
        assert tracker.count("openai") == 2
        assert tracker.total() == 3

    def test_key_includes_utc_day(self):
        clock = FakeClock(start=0.0)
        tracker = ErrorTracker(clock=clock)
        tracker.increment("openai")
        assert tracker.stats() == {"openai_1970-01-01": 1}

    def test_reset_drops_dependency(self, clock):
        tracker = ErrorTracker(clock=clock)
        tracker.increment("openai")
        tracker.increment("database")
        tracker.reset("openai")
        assert tracker.count("openai") == 0
        assert tracker.count("database") == 1

    def test_counters_drop_after_a_day(self, clock):
        tracker = ErrorTracker(clock=clock)
        tracker.increment("openai")
        clock.advance(24 * 60 * 60 + 1)
        assert tracker.increment("openai") == 1
        assert tracker.total() == 1
