"""
SQLAlchemy ORM models for the safety gate tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic decision/result models, see schemas.py.
"""

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, Text, true

from sendguard.storage import Base


class MessageLog(Base):
    """
    One row per delivery attempt (the ledger).

    Table: message_log
    At most one succeeded row per (recipient_id, order_id, message_type),
    enforced by the partial unique index below.
    """
    __tablename__ = "message_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=False)
    message_type = Column(String, nullable=False)
    content_hash = Column(String(16), nullable=False, index=True)
    content = Column(Text, nullable=True)
    sent_at_ms = Column(BigInteger, nullable=False, index=True)
    succeeded = Column(Boolean, nullable=False)
    error_detail = Column(Text, nullable=True)


Index(
    "ix_message_log_key",
    MessageLog.recipient_id,
    MessageLog.order_id,
    MessageLog.message_type,
)

Index(
    "uq_message_log_success",
    MessageLog.recipient_id,
    MessageLog.order_id,
    MessageLog.message_type,
    unique=True,
    sqlite_where=MessageLog.succeeded == true(),
    postgresql_where=MessageLog.succeeded == true(),
)


class CustomerLimit(Base):
    """
    Rolling hourly/daily send counters per recipient.

    Table: customer_limits
    Primary Key: recipient_id
    """
    __tablename__ = "customer_limits"

    recipient_id = Column(String, primary_key=True)
    hourly_count = Column(Integer, nullable=False, default=0)
    daily_count = Column(Integer, nullable=False, default=0)
    hourly_window_start_ms = Column(BigInteger, nullable=False)
    daily_window_start_ms = Column(BigInteger, nullable=False)
    total_sent = Column(Integer, nullable=False, default=0)


class SystemEvent(Base):
    """
    Append-only audit entries (kill switch toggles, grace period transitions).

    Table: system_events
    """
    __tablename__ = "system_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    data = Column(Text, nullable=True)  # JSON encoded
    recipient_id = Column(String, nullable=True, index=True)
    order_id = Column(String, nullable=True)
    message_type = Column(String, nullable=True)
    occurred_at_ms = Column(BigInteger, nullable=False, index=True)


Index(
    "ix_system_events_key",
    SystemEvent.recipient_id,
    SystemEvent.order_id,
    SystemEvent.message_type,
)


class SafetyFlag(Base):
    """
    Persisted operator flags. The kill switch lives here so it survives restarts
    and can be flipped by another process.

    Table: safety_flags
    """
    __tablename__ = "safety_flags"

    name = Column(String, primary_key=True)
    active = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    updated_at_ms = Column(BigInteger, nullable=False)
