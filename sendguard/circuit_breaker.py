import logging

from sqlalchemy.orm import Session

from sendguard.schemas import CheckResult, ReasonCode
from sendguard.storage import increment_counter, reset_expired_windows

logger = logging.getLogger(__name__)

DEFAULT_HOURLY_LIMIT = 3
DEFAULT_DAILY_LIMIT = 10


class CircuitBreaker:
    """
    Rolling hourly/daily send limits per recipient, backed by customer_limits.

    Expired windows are reset before the caps are compared; comparing first
    would let one extra message through at the window boundary.
    """

    def __init__(self, hourly_limit: int = DEFAULT_HOURLY_LIMIT, daily_limit: int = DEFAULT_DAILY_LIMIT):
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit

    def check_limits(self, db: Session, recipient_id: str, now_ms: int) -> CheckResult:
        counter = reset_expired_windows(db, recipient_id, now_ms)
        logger.debug(
            f"Counters for {recipient_id}: hourly={counter.hourly_count}, daily={counter.daily_count}"
        )
        if counter.hourly_count >= self.hourly_limit:
            return CheckResult.blocked(
                ReasonCode.HOURLY_LIMIT_EXCEEDED,
                f"Hourly limit of {self.hourly_limit} messages exceeded for {recipient_id}",
            )
        if counter.daily_count >= self.daily_limit:
            return CheckResult.blocked(
                ReasonCode.DAILY_LIMIT_EXCEEDED,
                f"Daily limit of {self.daily_limit} messages exceeded for {recipient_id}",
            )
        return CheckResult.passed()

    def record_send(self, db: Session, recipient_id: str, now_ms: int, commit: bool = True) -> None:
        increment_counter(db, recipient_id, now_ms, commit=commit)
