"""
Duplicate checks: ledger, content recency and side-channel marker per key,
then the recipient-level rapid-fire and consecutive-failure safeguards.
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from sendguard.clock import DAY_MS
from sendguard.markers import MarkerStore
from sendguard.schemas import CheckResult, ReasonCode
from sendguard.storage import (
    count_trailing_failures,
    find_recent_by_content_hash,
    get_last_success_at,
    get_successful_record,
)
from sendguard.utils import content_hash

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW_MS = DAY_MS


def check_ledger(db: Session, recipient_id: str, order_id: str, message_type: str) -> CheckResult:
    existing = get_successful_record(db, recipient_id, order_id, message_type)
    if existing is not None:
        return CheckResult.blocked(
            ReasonCode.LEDGER_DUPLICATE,
            f"Message already sent according to ledger (at {existing.sent_at_ms})",
        )
    return CheckResult.passed()


def check_content_recency(db: Session, recipient_id: str, content: str, now_ms: int) -> CheckResult:
    digest = content_hash(content)
    if find_recent_by_content_hash(db, recipient_id, digest, now_ms - DUPLICATE_WINDOW_MS) is not None:
        return CheckResult.blocked(
            ReasonCode.CONTENT_DUPLICATE,
            "Identical content already sent in last 24 hours",
        )
    return CheckResult.passed()


def check_side_channel(
    markers: MarkerStore,
    recipient_id: str,
    order_id: str,
    message_type: str,
    now_ms: int,
) -> CheckResult:
    if markers.sent_since(recipient_id, order_id, message_type, now_ms - DUPLICATE_WINDOW_MS):
        return CheckResult.blocked(
            ReasonCode.SIDE_CHANNEL_DUPLICATE,
            "Message marked as sent in side-channel marker",
        )
    return CheckResult.passed()


def check_rapid_fire(db: Session, recipient_id: str, now_ms: int, window_ms: int) -> CheckResult:
    last_sent = get_last_success_at(db, recipient_id)
    if last_sent is not None and now_ms - last_sent < window_ms:
        return CheckResult.blocked(
            ReasonCode.RAPID_FIRE,
            f"Last message to this recipient was {now_ms - last_sent}ms ago",
        )
    return CheckResult.passed()


def check_consecutive_failures(db: Session, recipient_id: str, now_ms: int, max_failures: int) -> CheckResult:
    # Failures older than the duplicate window are ignored
    failures = count_trailing_failures(db, recipient_id, now_ms - DUPLICATE_WINDOW_MS, max_failures)
    if failures >= max_failures:
        return CheckResult.blocked(
            ReasonCode.CONSECUTIVE_FAILURES,
            f"{failures} consecutive delivery failures for this recipient",
        )
    return CheckResult.passed()


def check_duplicates(
    db: Session,
    markers: MarkerStore,
    recipient_id: str,
    order_id: str,
    message_type: str,
    content: str,
    now_ms: int,
    order_data: Optional[Mapping[str, Any]] = None,
    rapid_fire_ms: int = 5000,
    max_consecutive_failures: int = 3,
) -> CheckResult:
    """
    Run the layers in order; the first failure wins.
    order_data is accepted for interface parity with the rule step.
    """
    layers = (
        lambda: check_ledger(db, recipient_id, order_id, message_type),
        lambda: check_content_recency(db, recipient_id, content, now_ms),
        lambda: check_side_channel(markers, recipient_id, order_id, message_type, now_ms),
        lambda: check_rapid_fire(db, recipient_id, now_ms, rapid_fire_ms),
        lambda: check_consecutive_failures(db, recipient_id, now_ms, max_consecutive_failures),
    )
    for layer in layers:
        result = layer()
        if not result.allowed:
            logger.info(f"Duplicate blocked: {result.reason_code.value} for {recipient_id}/{order_id}/{message_type}")
            return result
    return CheckResult.passed()
