"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file and marker directory under tmp_path,
and a FakeClock pinned to 12:00 UTC so business hours are open.
"""

import pytest

# Clear settings cache before any package imports so test env vars are used
from sendguard.config import Settings, get_settings
get_settings.cache_clear()

from sendguard.clock import FakeClock, MINUTE_MS, SECOND_MS
from sendguard.gate import build_safety_stack


# 2025-01-15T12:00:00Z
NOON_UTC_MS = 1736942400000

GRACE_PERIOD_MS = 4 * MINUTE_MS


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=f"sqlite:///{tmp_path}/safety.db",
        DATA_DIR=str(tmp_path),
        LOG_LEVEL="DEBUG",
        GRACE_PERIOD_SECONDS=240,
        KILL_SWITCH=False,
        HOURLY_LIMIT=3,
        DAILY_LIMIT=10,
        SIMILARITY_THRESHOLD=0.8,
        BUSINESS_HOURS_START=9,
        BUSINESS_HOURS_END=20,
        BUSINESS_TIMEZONE="UTC",
        ENFORCE_RULE_WINDOWS=False,
        EVALUATION_TIMEOUT_SECONDS=10.0,
        RAPID_FIRE_SECONDS=5.0,
        MAX_CONSECUTIVE_FAILURES=3,
    )
    values.update(overrides)
    return Settings(**values)


def order_fields(order_id: str = "O1", phone: str = "R1", **extra) -> dict:
    data = {"customer_name": "Asha", "order_id": order_id, "phone": phone}
    data.update(extra)
    return data


@pytest.fixture
def clock():
    return FakeClock(NOON_UTC_MS)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def stack(settings, clock):
    """(gate, recorder) still inside the startup grace period."""
    return build_safety_stack(settings, clock)


@pytest.fixture
def gate(stack):
    return stack[0]


@pytest.fixture
def recorder(stack):
    return stack[1]


@pytest.fixture
def active_gate(gate, clock):
    """Gate whose grace period has elapsed."""
    clock.advance(GRACE_PERIOD_MS + SECOND_MS)
    return gate
