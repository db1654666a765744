"""
Tests for the authentication circuit breaker.
"""

import pytest

from tradepilot.execution.circuit_breaker import AuthCircuitBreaker


@pytest.fixture
def breaker():
    return AuthCircuitBreaker(max_failures=3)


class TestAuthCircuitBreaker:

    def test_trips_on_third_failure_only(self, breaker):
        assert breaker.record_failure("acct", "401") is False
        assert breaker.record_failure("acct", "401") is False
        assert not breaker.is_open("acct")

        assert breaker.record_failure("acct", "401") is True
        assert breaker.is_open("acct")

        # Already open: further failures do not re-trip
        assert breaker.record_failure("acct", "401") is False
        assert breaker.failures("acct") == 4

    def test_accounts_are_independent(self, breaker):
        for _ in range(3):
            breaker.record_failure("a")
        assert breaker.is_open("a")
        assert not breaker.is_open("b")
        assert breaker.failures("b") == 0

    def test_success_clears_failures(self, breaker):
        breaker.record_failure("acct")
        breaker.record_failure("acct")
        breaker.record_success("acct")
        assert breaker.failures("acct") == 0

        breaker.record_failure("acct")
        assert not breaker.is_open("acct")

    def test_reset_closes_open_breaker(self, breaker):
        for _ in range(3):
            breaker.record_failure("acct")
        breaker.reset("acct")
        assert not breaker.is_open("acct")

    def test_snapshot(self, breaker):
        for _ in range(3):
            breaker.record_failure("acct", "unauthorized")

        state = breaker.snapshot()["acct"]
        assert state["open"] is True
        assert state["failures"] == 3
        assert state["last_error"] == "unauthorized"
        assert state["tripped_at"] is not None
