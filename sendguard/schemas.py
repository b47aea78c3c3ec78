"""
Pydantic models for gate decisions and results.

This module contains:
- ReasonCode: every outcome the gate can report
- CheckResult: the verdict of a single sub-check
- Decision: the verdict of a full evaluation, returned to callers
- RecordResult / SafetyStatus: Recorder and status outputs
"""

import uuid
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class ReasonCode(str, Enum):
    APPROVED = "APPROVED"

    # Orchestrator
    KILL_SWITCH_ACTIVE = "KILL_SWITCH_ACTIVE"
    STARTUP_GRACE_PERIOD = "STARTUP_GRACE_PERIOD"
    OUTSIDE_BUSINESS_HOURS = "OUTSIDE_BUSINESS_HOURS"
    SAFETY_CHECK_ERROR = "SAFETY_CHECK_ERROR"

    # Rule catalog
    UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    RULE_CHECK_ERROR = "RULE_CHECK_ERROR"
    WELCOME_MARKED_SENT_UPSTREAM = "WELCOME_MARKED_SENT_UPSTREAM"
    CONFIRMATION_MARKED_SENT_UPSTREAM = "CONFIRMATION_MARKED_SENT_UPSTREAM"
    READY_MARKED_SENT_UPSTREAM = "READY_MARKED_SENT_UPSTREAM"
    DELIVERY_MARKED_SENT_UPSTREAM = "DELIVERY_MARKED_SENT_UPSTREAM"
    FABRIC_WELCOME_MARKED_SENT_UPSTREAM = "FABRIC_WELCOME_MARKED_SENT_UPSTREAM"
    FABRIC_PURCHASE_MARKED_SENT_UPSTREAM = "FABRIC_PURCHASE_MARKED_SENT_UPSTREAM"
    WELCOME_NOT_SENT_FIRST = "WELCOME_NOT_SENT_FIRST"
    ORDER_NOT_READY_STATUS = "ORDER_NOT_READY_STATUS"
    ORDER_NOT_DELIVERED_STATUS = "ORDER_NOT_DELIVERED_STATUS"
    READY_NOT_SENT_FIRST = "READY_NOT_SENT_FIRST"
    TOO_SOON_FOR_REMINDER = "TOO_SOON_FOR_REMINDER"
    MAX_PICKUP_REMINDERS_SENT = "MAX_PICKUP_REMINDERS_SENT"
    DELIVERY_NOT_SENT_FIRST = "DELIVERY_NOT_SENT_FIRST"
    NO_REMAINING_AMOUNT = "NO_REMAINING_AMOUNT"
    MAX_PAYMENT_REMINDERS_SENT = "MAX_PAYMENT_REMINDERS_SENT"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    MESSAGE_TYPE_DAILY_CAP = "MESSAGE_TYPE_DAILY_CAP"

    # Duplicate detector
    LEDGER_DUPLICATE = "LEDGER_DUPLICATE"
    CONTENT_DUPLICATE = "CONTENT_DUPLICATE"
    SIDE_CHANNEL_DUPLICATE = "SIDE_CHANNEL_DUPLICATE"
    RAPID_FIRE = "RAPID_FIRE"
    CONSECUTIVE_FAILURES = "CONSECUTIVE_FAILURES"

    # Circuit breaker
    HOURLY_LIMIT_EXCEEDED = "HOURLY_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"

    # Similarity guard
    CONTENT_TOO_SIMILAR = "CONTENT_TOO_SIMILAR"


class GateState(str, Enum):
    STARTUP = "STARTUP"
    ACTIVE = "ACTIVE"
    HALTED = "HALTED"


class CheckResult(BaseModel):
    """Outcome of one pipeline step."""
    allowed: bool
    reason_code: Optional[ReasonCode] = None
    message: str = ""

    @classmethod
    def passed(cls) -> "CheckResult":
        return cls(allowed=True)

    @classmethod
    def blocked(cls, reason_code: ReasonCode, message: str) -> "CheckResult":
        return cls(allowed=False, reason_code=reason_code, message=message)


class Decision(BaseModel):
    """
    Verdict returned by SafetyGate.evaluate.

    Callers surface human_message verbatim; approval does not mean the
    message was sent.
    """
    allowed: bool = Field(..., description="True only when every check passed")
    reason_code: ReasonCode = Field(..., description="Machine-readable outcome")
    human_message: str = Field(..., description="Operator-facing explanation")
    decision_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Unique id for tracing this evaluation in logs",
    )
    decided_at_ms: int = Field(..., ge=0, description="Epoch milliseconds of the verdict")

    model_config = {"frozen": True}


class RecordResult(BaseModel):
    """Outcome of Recorder.record_outcome."""
    recorded: bool = Field(..., description="A ledger row was written")
    duplicate: bool = Field(False, description="A succeeded row already existed for the key")
    reason_code: Optional[ReasonCode] = None
    content_hash: str
    marker_written: bool = Field(False, description="Side-channel marker was updated")


class SafetyStatus(BaseModel):
    """Point-in-time view of the gate for operators."""
    state: GateState
    started_at_ms: int
    grace_period_active: bool
    grace_period_remaining_seconds: int = Field(..., ge=0)
    business_hours_open: bool
    kill_switch_active: bool
    hourly_limit: int
    daily_limit: int
    similarity_threshold: float
    message_rule_count: int
    ledger: Dict[str, object] = Field(default_factory=dict)
