import logging
import threading
from typing import Optional

from sqlalchemy.orm import sessionmaker

from sendguard.clock import Clock, SystemClock
from sendguard.storage import KILL_SWITCH_FLAG, append_system_event, get_flag, session_scope, set_kill_switch

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_MS = 4 * 60 * 1000


class StartupGate:
    """
    Blocks every send for a fixed grace period after process start, and
    whenever the kill switch is engaged.

    The kill switch has two sources, OR'ed: an override flag supplied at
    construction (environment) and a persisted flag in safety_flags, read
    fresh on every call so another process can flip it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Clock] = None,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
        kill_switch_override: bool = False,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.grace_period_ms = grace_period_ms
        self.kill_switch_override = kill_switch_override
        self.started_at_ms = self.clock.now_ms()
        self._grace_ended_logged = False
        self._lock = threading.Lock()

        self._append_event(
            "grace_period_started",
            f"Startup grace period of {grace_period_ms // 1000}s started",
            {"started_at_ms": self.started_at_ms, "expires_at_ms": self.started_at_ms + grace_period_ms},
        )
        if kill_switch_override:
            logger.warning("Kill switch override is set; all sends are blocked")

    def remaining_grace_ms(self) -> int:
        return max(0, self.grace_period_ms - (self.clock.now_ms() - self.started_at_ms))

    def grace_period_active(self) -> bool:
        if self.clock.now_ms() - self.started_at_ms < self.grace_period_ms:
            return True
        self._note_grace_period_ended()
        return False

    def _note_grace_period_ended(self) -> None:
        # Edge-triggered: only the first poll past expiry writes the event
        with self._lock:
            if self._grace_ended_logged:
                return
            self._grace_ended_logged = True
        self._append_event(
            "grace_period_ended",
            "Startup grace period completed",
            {"duration_ms": self.grace_period_ms},
        )

    def kill_switch_active(self) -> bool:
        if self.kill_switch_override:
            return True
        with session_scope(self.session_factory) as db:
            return get_flag(db, KILL_SWITCH_FLAG)

    def is_blocked(self) -> bool:
        return self.kill_switch_active() or self.grace_period_active()

    def activate(self, reason: str = "Manual activation", source: str = "gate") -> None:
        with session_scope(self.session_factory) as db:
            set_kill_switch(db, True, reason, self.clock.now_ms(), source)
        logger.warning(f"Kill switch activated: {reason}")

    def deactivate(self, source: str = "gate") -> None:
        with session_scope(self.session_factory) as db:
            set_kill_switch(db, False, None, self.clock.now_ms(), source)
        logger.info("Kill switch deactivated")

    def _append_event(self, event_type: str, description: str, data: dict) -> None:
        with session_scope(self.session_factory) as db:
            append_system_event(db, event_type, description, self.clock.now_ms(), data=data)
