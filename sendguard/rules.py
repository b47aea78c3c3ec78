"""
Message-type rule catalog.

Each message type declares the fields it needs and a precondition over the
prior ledger rows of the same recipient/order. Preconditions are pure
functions of a PriorRecords snapshot, so the catalog can be exercised
without a database; check_rules loads the snapshot and dispatches.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sendguard.clock import DAY_MS, HOUR_MS, MINUTE_MS
from sendguard.schemas import CheckResult, ReasonCode
from sendguard.storage import SafetyStoreError, get_recent_records, get_records_for_order
from sendguard.utils import lookup_field, parse_amount, parse_flag

logger = logging.getLogger(__name__)

READY_STATUSES = frozenset({"ready", "completed", "pickup"})
DELIVERED_STATUSES = frozenset({"delivered", "completed"})

PICKUP_REMINDER_MIN_AGE_MS = 2 * DAY_MS
MAX_PICKUP_REMINDERS = 3
MAX_PAYMENT_REMINDERS = 5


@dataclass(frozen=True)
class PriorRecord:
    message_type: str
    sent_at_ms: int
    succeeded: bool


class PriorRecords:
    """Read-only view of earlier attempts for one recipient/order."""

    def __init__(self, records: Iterable[PriorRecord] = ()):
        self._records: List[PriorRecord] = sorted(records, key=lambda r: r.sent_at_ms)

    @classmethod
    def from_rows(cls, rows: Iterable[Any]) -> "PriorRecords":
        return cls(
            PriorRecord(row.message_type, row.sent_at_ms, bool(row.succeeded)) for row in rows
        )

    def last_success(self, message_type: str) -> Optional[PriorRecord]:
        successes = [r for r in self._records if r.succeeded and r.message_type == message_type]
        return successes[-1] if successes else None

    def has_success(self, message_type: str) -> bool:
        return self.last_success(message_type) is not None

    def attempt_count(self, message_type: str) -> int:
        return sum(1 for r in self._records if r.message_type == message_type)

    def last_success_of_other_type(self, message_type: str) -> Optional[PriorRecord]:
        others = [r for r in self._records if r.succeeded and r.message_type != message_type]
        return others[-1] if others else None

    def __len__(self) -> int:
        return len(self._records)


Precondition = Callable[[PriorRecords, Mapping[str, Any], Mapping[str, Any], int], CheckResult]


@dataclass(frozen=True)
class RuleDefinition:
    message_type: str
    required_fields: FrozenSet[str]
    daily_cap: int
    cooldown_ms: int
    condition: str
    precondition: Precondition


# =============================================================================
# Precondition building blocks
# =============================================================================

def _not_already_sent(prior: PriorRecords, message_type: str) -> Optional[CheckResult]:
    if prior.has_success(message_type):
        return CheckResult.blocked(
            ReasonCode.LEDGER_DUPLICATE,
            f"{message_type} message already sent for this order",
        )
    return None


def _not_marked_upstream(
    message_type: str,
    reason_code: ReasonCode,
    order_data: Mapping[str, Any],
    source_data: Mapping[str, Any],
) -> Optional[CheckResult]:
    flag_name = f"{message_type}_notified"
    if parse_flag(lookup_field(flag_name, source_data, order_data)):
        return CheckResult.blocked(
            reason_code,
            f"{flag_name} is already set upstream",
        )
    return None


def _order_status(order_data: Mapping[str, Any], source_data: Mapping[str, Any]) -> str:
    return str(lookup_field("status", order_data, source_data) or "").strip().lower()


def _first_failure(*results: Optional[CheckResult]) -> CheckResult:
    for result in results:
        if result is not None:
            return result
    return CheckResult.passed()


# =============================================================================
# Per-type preconditions
# =============================================================================

def check_welcome(prior, order_data, source_data, now_ms) -> CheckResult:
    return _first_failure(
        _not_already_sent(prior, "welcome"),
        _not_marked_upstream("welcome", ReasonCode.WELCOME_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


def check_confirmation(prior, order_data, source_data, now_ms) -> CheckResult:
    duplicate = _not_already_sent(prior, "confirmation")
    if duplicate:
        return duplicate
    if not prior.has_success("welcome"):
        return CheckResult.blocked(
            ReasonCode.WELCOME_NOT_SENT_FIRST,
            "Welcome message must be sent before confirmation",
        )
    return _first_failure(
        _not_marked_upstream("confirmation", ReasonCode.CONFIRMATION_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


def check_ready(prior, order_data, source_data, now_ms) -> CheckResult:
    duplicate = _not_already_sent(prior, "ready")
    if duplicate:
        return duplicate
    status = _order_status(order_data, source_data)
    if status not in READY_STATUSES:
        return CheckResult.blocked(
            ReasonCode.ORDER_NOT_READY_STATUS,
            f"Order status is '{status}', not ready for pickup notification",
        )
    return _first_failure(
        _not_marked_upstream("ready", ReasonCode.READY_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


def check_delivery(prior, order_data, source_data, now_ms) -> CheckResult:
    duplicate = _not_already_sent(prior, "delivery")
    if duplicate:
        return duplicate
    status = _order_status(order_data, source_data)
    if status not in DELIVERED_STATUSES:
        return CheckResult.blocked(
            ReasonCode.ORDER_NOT_DELIVERED_STATUS,
            f"Order status is '{status}', not delivered",
        )
    return _first_failure(
        _not_marked_upstream("delivery", ReasonCode.DELIVERY_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


def check_pickup_reminder(prior, order_data, source_data, now_ms) -> CheckResult:
    duplicate = _not_already_sent(prior, "pickup_reminder")
    if duplicate:
        return duplicate
    ready = prior.last_success("ready")
    if ready is None:
        return CheckResult.blocked(
            ReasonCode.READY_NOT_SENT_FIRST,
            "Ready message must be sent before pickup reminder",
        )
    age_ms = now_ms - ready.sent_at_ms
    if age_ms < PICKUP_REMINDER_MIN_AGE_MS:
        return CheckResult.blocked(
            ReasonCode.TOO_SOON_FOR_REMINDER,
            f"Only {age_ms / DAY_MS:.1f} days since ready message; need 2+ days for pickup reminder",
        )
    if prior.attempt_count("pickup_reminder") >= MAX_PICKUP_REMINDERS:
        return CheckResult.blocked(
            ReasonCode.MAX_PICKUP_REMINDERS_SENT,
            f"Maximum pickup reminders ({MAX_PICKUP_REMINDERS}) already attempted",
        )
    return CheckResult.passed()


def check_payment_reminder(prior, order_data, source_data, now_ms) -> CheckResult:
    duplicate = _not_already_sent(prior, "payment_reminder")
    if duplicate:
        return duplicate
    if not prior.has_success("delivery"):
        return CheckResult.blocked(
            ReasonCode.DELIVERY_NOT_SENT_FIRST,
            "Delivery message must be sent before payment reminder",
        )
    balance = parse_amount(lookup_field("remaining_amount", order_data, source_data))
    if balance <= 0:
        return CheckResult.blocked(
            ReasonCode.NO_REMAINING_AMOUNT,
            "No remaining amount; payment complete",
        )
    if prior.attempt_count("payment_reminder") >= MAX_PAYMENT_REMINDERS:
        return CheckResult.blocked(
            ReasonCode.MAX_PAYMENT_REMINDERS_SENT,
            f"Maximum payment reminders ({MAX_PAYMENT_REMINDERS}) already attempted",
        )
    return CheckResult.passed()


def check_fabric_welcome(prior, order_data, source_data, now_ms) -> CheckResult:
    return _first_failure(
        _not_already_sent(prior, "fabric_welcome"),
        _not_marked_upstream("fabric_welcome", ReasonCode.FABRIC_WELCOME_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


def check_fabric_purchase(prior, order_data, source_data, now_ms) -> CheckResult:
    return _first_failure(
        _not_already_sent(prior, "fabric_purchase"),
        _not_marked_upstream("fabric_purchase", ReasonCode.FABRIC_PURCHASE_MARKED_SENT_UPSTREAM, order_data, source_data),
    )


_BASE_FIELDS = ("customer_name", "order_id", "phone")


def _rule(message_type, extra_fields, daily_cap, cooldown_ms, condition, precondition) -> RuleDefinition:
    return RuleDefinition(
        message_type=message_type,
        required_fields=frozenset(_BASE_FIELDS + tuple(extra_fields)),
        daily_cap=daily_cap,
        cooldown_ms=cooldown_ms,
        condition=condition,
        precondition=precondition,
    )


MESSAGE_RULES: Dict[str, RuleDefinition] = {
    rule.message_type: rule
    for rule in (
        _rule("welcome", (), 2, 0,
              "phone + order unique AND welcome not notified upstream",
              check_welcome),
        _rule("confirmation", ("garment_type", "delivery_date"), 2, 3 * MINUTE_MS,
              "phone + order unique AND welcome already sent AND confirmation not notified upstream",
              check_confirmation),
        _rule("ready", (), 2, HOUR_MS,
              "phone + order unique AND status in ready/completed/pickup AND ready not notified upstream",
              check_ready),
        _rule("delivery", (), 1, 0,
              "phone + order unique AND status in delivered/completed AND delivery not notified upstream",
              check_delivery),
        _rule("pickup_reminder", ("ready_date",), 1, DAY_MS,
              "ready sent at least 2 days ago AND fewer than 3 pickup reminders",
              check_pickup_reminder),
        _rule("payment_reminder", ("remaining_amount",), 1, 2 * DAY_MS,
              "delivery sent AND remaining amount > 0 AND fewer than 5 payment reminders",
              check_payment_reminder),
        _rule("fabric_welcome", ("fabric_type",), 1, 0,
              "phone + order unique AND fabric welcome not notified upstream",
              check_fabric_welcome),
        _rule("fabric_purchase", ("fabric_type", "total_amount"), 1, 0,
              "phone + order unique AND fabric purchase not notified upstream",
              check_fabric_purchase),
    )
}


# =============================================================================
# Catalog entry point
# =============================================================================

def check_rule_windows(
    rule: RuleDefinition,
    prior: PriorRecords,
    sent_today_of_type: int,
    now_ms: int,
) -> CheckResult:
    """Cooldown since the previous message on the order, then the per-type daily cap."""
    if rule.cooldown_ms:
        previous = prior.last_success_of_other_type(rule.message_type)
        if previous is not None:
            elapsed = now_ms - previous.sent_at_ms
            if elapsed < rule.cooldown_ms:
                remaining_s = -(-(rule.cooldown_ms - elapsed) // 1000)
                return CheckResult.blocked(
                    ReasonCode.COOLDOWN_ACTIVE,
                    f"{rule.message_type} cooldown active after {previous.message_type} "
                    f"({remaining_s}s remaining)",
                )
    if sent_today_of_type >= rule.daily_cap:
        return CheckResult.blocked(
            ReasonCode.MESSAGE_TYPE_DAILY_CAP,
            f"Daily cap of {rule.daily_cap} {rule.message_type} messages reached",
        )
    return CheckResult.passed()


def check_rules(
    db: Session,
    recipient_id: str,
    order_id: str,
    message_type: str,
    order_data: Mapping[str, Any],
    source_data: Mapping[str, Any],
    now_ms: int,
    enforce_windows: bool = False,
) -> CheckResult:
    """
    Validate a candidate message against its type's rule.

    Steps:
        1. Unknown type fails closed
        2. Every required field must be present in order or source data
        3. Type precondition over prior ledger rows
        4. Cooldown and per-type daily cap, when enforce_windows is set
    """
    rule = MESSAGE_RULES.get(message_type)
    if rule is None:
        logger.info(f"Unknown message type: {message_type}")
        return CheckResult.blocked(
            ReasonCode.UNKNOWN_MESSAGE_TYPE,
            f"Unknown message type: {message_type}",
        )

    for field in sorted(rule.required_fields):
        if lookup_field(field, order_data, source_data) is None:
            return CheckResult.blocked(
                ReasonCode.MISSING_REQUIRED_FIELD,
                f"Missing required field: {field}",
            )

    logger.debug(f"Checking rules for {message_type}: {rule.condition}")
    try:
        prior = PriorRecords.from_rows(get_records_for_order(db, recipient_id, order_id))
        result = rule.precondition(prior, order_data or {}, source_data or {}, now_ms)
        if result.allowed and enforce_windows:
            sent_today = len(get_recent_records(
                db, recipient_id, now_ms - DAY_MS, succeeded_only=True, message_type=message_type,
            ))
            result = check_rule_windows(rule, prior, sent_today, now_ms)
    except (SQLAlchemyError, SafetyStoreError) as e:
        logger.exception(f"Rule check failed for {recipient_id}/{order_id}/{message_type}")
        return CheckResult.blocked(ReasonCode.RULE_CHECK_ERROR, f"Rule check error: {e}")

    return result
