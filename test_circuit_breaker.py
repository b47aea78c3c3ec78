"""
Tests for per-recipient hourly/daily limits and their counter storage.
"""

import pytest

from conftest import NOON_UTC_MS
from sendguard.circuit_breaker import CircuitBreaker
from sendguard.clock import DAY_MS, HOUR_MS, MINUTE_MS
from sendguard.schemas import ReasonCode
from sendguard.storage import get_counter, session_scope


T0 = NOON_UTC_MS


@pytest.fixture
def db(gate):
    with session_scope(gate.session_factory) as session:
        yield session


class TestHourlyLimit:

    def test_fresh_recipient_passes(self, db):
        breaker = CircuitBreaker(hourly_limit=3, daily_limit=10)
        assert breaker.check_limits(db, "R1", T0).allowed

    def test_blocks_at_limit(self, db):
        breaker = CircuitBreaker(hourly_limit=3, daily_limit=10)
        for minute in (0, 20, 40):
            breaker.record_send(db, "R1", T0 + minute * MINUTE_MS)

        result = breaker.check_limits(db, "R1", T0 + 59 * MINUTE_MS)
        assert result.reason_code == ReasonCode.HOURLY_LIMIT_EXCEEDED

    def test_window_resets_after_an_hour(self, db):
        breaker = CircuitBreaker(hourly_limit=3, daily_limit=10)
        for minute in (0, 20, 40):
            breaker.record_send(db, "R1", T0 + minute * MINUTE_MS)

        assert breaker.check_limits(db, "R1", T0 + 61 * MINUTE_MS).allowed
        counter = get_counter(db, "R1")
        assert counter.hourly_count == 0
        assert counter.hourly_window_start_ms == T0 + 61 * MINUTE_MS
        assert counter.daily_count == 3

    def test_expired_window_restarts_at_one(self, db):
        breaker = CircuitBreaker()
        breaker.record_send(db, "R1", T0)
        breaker.record_send(db, "R1", T0 + 2 * HOUR_MS)

        counter = get_counter(db, "R1")
        assert counter.hourly_count == 1
        assert counter.daily_count == 2
        assert counter.total_sent == 2

    def test_recipients_counted_separately(self, db):
        breaker = CircuitBreaker(hourly_limit=1, daily_limit=10)
        breaker.record_send(db, "R1", T0)
        assert breaker.check_limits(db, "R2", T0).allowed


class TestDailyLimit:

    def test_blocks_at_daily_limit(self, db):
        breaker = CircuitBreaker(hourly_limit=3, daily_limit=4)
        for hour in range(4):
            breaker.record_send(db, "R1", T0 + hour * 2 * HOUR_MS)

        result = breaker.check_limits(db, "R1", T0 + 8 * HOUR_MS)
        assert result.reason_code == ReasonCode.DAILY_LIMIT_EXCEEDED

    def test_hourly_reported_before_daily(self, db):
        breaker = CircuitBreaker(hourly_limit=2, daily_limit=2)
        breaker.record_send(db, "R1", T0)
        breaker.record_send(db, "R1", T0 + MINUTE_MS)

        result = breaker.check_limits(db, "R1", T0 + 2 * MINUTE_MS)
        assert result.reason_code == ReasonCode.HOURLY_LIMIT_EXCEEDED

    def test_daily_window_resets(self, db):
        breaker = CircuitBreaker(hourly_limit=3, daily_limit=1)
        breaker.record_send(db, "R1", T0)
        assert not breaker.check_limits(db, "R1", T0 + 2 * HOUR_MS).allowed
        assert breaker.check_limits(db, "R1", T0 + DAY_MS + 1).allowed
