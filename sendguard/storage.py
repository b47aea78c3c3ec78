import json
import logging
from contextlib import contextmanager
from typing import Any, Generator, Iterable, List, Optional, Tuple

from sqlalchemy import case, create_engine, func, inspect, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from sendguard.clock import DAY_MS, HOUR_MS

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

KILL_SWITCH_FLAG = "kill_switch"

TABLES = ("message_log", "customer_limits", "system_events", "safety_flags")


class SafetyStoreError(RuntimeError):
    """Raised when the durable store cannot be read or written."""


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the safety database.

    SQLite connections are shared across worker threads, so
    check_same_thread is disabled; in-memory databases use a single
    static connection so every session sees the same data.
    """
    logger.debug(f"Creating engine for {database_url}")
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables and indexes.
    Safe to call on every startup.
    """
    logger.debug(f"Initializing database: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from sendguard import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Safety database initialized")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise SafetyStoreError(f"Failed to initialize database: {e}") from e


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Yield a session and translate driver errors into SafetyStoreError.
    Repository functions commit their own writes.
    """
    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as e:
        db.rollback()
        raise SafetyStoreError(str(e)) from e
    finally:
        db.close()


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and the schema is applied.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            existing = set(inspect(db.connection()).get_table_names())
            missing = [name for name in TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        logger.debug("Database health check passed")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Ledger
# =============================================================================

def insert_message_record(
    db: Session,
    recipient_id: str,
    order_id: str,
    message_type: str,
    content_hash: str,
    content: Optional[str],
    sent_at_ms: int,
    succeeded: bool,
    error_detail: Optional[str] = None,
    commit: bool = True,
) -> Tuple[bool, bool]:
    """
    Append a delivery attempt to the ledger.

    With commit=False the row is only flushed, so the caller can commit it
    together with the counter update.

    Returns:
        Tuple of (created: bool, is_duplicate: bool)
        - (True, False): Row written
        - (False, True): A succeeded row already exists for the key
    """
    from sendguard.models import MessageLog

    logger.debug(
        f"Writing ledger row: recipient={recipient_id}, order={order_id}, "
        f"type={message_type}, succeeded={succeeded}"
    )
    record = MessageLog(
        recipient_id=recipient_id,
        order_id=order_id,
        message_type=message_type,
        content_hash=content_hash,
        content=content,
        sent_at_ms=sent_at_ms,
        succeeded=succeeded,
        error_detail=error_detail,
    )
    db.add(record)
    try:
        if commit:
            db.commit()
        else:
            db.flush()
    except IntegrityError:
        # Unique index on succeeded rows rejected a second success
        db.rollback()
        logger.info(f"Ledger duplicate rejected: {recipient_id}/{order_id}/{message_type}")
        return (False, True)
    return (True, False)


def get_successful_record(db: Session, recipient_id: str, order_id: str, message_type: str):
    from sendguard.models import MessageLog

    return (
        db.query(MessageLog)
        .filter(
            MessageLog.recipient_id == recipient_id,
            MessageLog.order_id == order_id,
            MessageLog.message_type == message_type,
            MessageLog.succeeded.is_(True),
        )
        .order_by(MessageLog.sent_at_ms.desc())
        .first()
    )


def get_records_for_order(db: Session, recipient_id: str, order_id: str) -> List[Any]:
    """All attempts (succeeded and failed) for one recipient/order, oldest first."""
    from sendguard.models import MessageLog

    return (
        db.query(MessageLog)
        .filter(MessageLog.recipient_id == recipient_id, MessageLog.order_id == order_id)
        .order_by(MessageLog.sent_at_ms.asc(), MessageLog.id.asc())
        .all()
    )


def get_recent_records(
    db: Session,
    recipient_id: str,
    since_ms: int,
    succeeded_only: bool = True,
    message_type: Optional[str] = None,
) -> List[Any]:
    from sendguard.models import MessageLog

    query = db.query(MessageLog).filter(
        MessageLog.recipient_id == recipient_id,
        MessageLog.sent_at_ms > since_ms,
    )
    if succeeded_only:
        query = query.filter(MessageLog.succeeded.is_(True))
    if message_type:
        query = query.filter(MessageLog.message_type == message_type)
    return query.order_by(MessageLog.sent_at_ms.desc()).all()


def find_recent_by_content_hash(db: Session, recipient_id: str, content_hash: str, since_ms: int):
    from sendguard.models import MessageLog

    return (
        db.query(MessageLog)
        .filter(
            MessageLog.recipient_id == recipient_id,
            MessageLog.content_hash == content_hash,
            MessageLog.sent_at_ms > since_ms,
            MessageLog.succeeded.is_(True),
        )
        .first()
    )


def get_last_success_at(db: Session, recipient_id: str) -> Optional[int]:
    from sendguard.models import MessageLog

    return (
        db.query(func.max(MessageLog.sent_at_ms))
        .filter(MessageLog.recipient_id == recipient_id, MessageLog.succeeded.is_(True))
        .scalar()
    )


def count_trailing_failures(db: Session, recipient_id: str, since_ms: int, limit: int) -> int:
    """
    Number of failed attempts to a recipient since its latest success,
    looking at no more than `limit` rows newer than since_ms.
    """
    from sendguard.models import MessageLog

    rows = (
        db.query(MessageLog.succeeded)
        .filter(MessageLog.recipient_id == recipient_id, MessageLog.sent_at_ms > since_ms)
        .order_by(MessageLog.sent_at_ms.desc(), MessageLog.id.desc())
        .limit(limit)
        .all()
    )
    failures = 0
    for row in rows:
        if row.succeeded:
            break
        failures += 1
    return failures


def get_ledger_stats(db: Session) -> dict:
    """
    Summarize the ledger for operator status output.

    Computes:
    - total_attempts / succeeded / failed
    - recipients_count: number of distinct recipients
    - per_type: succeeded sends by message type
    - first_sent_at_ms / last_sent_at_ms (None if the ledger is empty)
    """
    from sendguard.models import MessageLog

    total = db.query(func.count(MessageLog.id)).scalar() or 0
    succeeded = (
        db.query(func.count(MessageLog.id)).filter(MessageLog.succeeded.is_(True)).scalar() or 0
    )
    recipients = db.query(func.count(func.distinct(MessageLog.recipient_id))).scalar() or 0
    per_type_rows = (
        db.query(MessageLog.message_type, func.count(MessageLog.id).label("count"))
        .filter(MessageLog.succeeded.is_(True))
        .group_by(MessageLog.message_type)
        .order_by(func.count(MessageLog.id).desc())
        .all()
    )
    return {
        "total_attempts": total,
        "succeeded": succeeded,
        "failed": total - succeeded,
        "recipients_count": recipients,
        "per_type": {row.message_type: row.count for row in per_type_rows},
        "first_sent_at_ms": db.query(func.min(MessageLog.sent_at_ms)).scalar(),
        "last_sent_at_ms": db.query(func.max(MessageLog.sent_at_ms)).scalar(),
    }


# =============================================================================
# Customer Counters
# =============================================================================

def ensure_counter(db: Session, recipient_id: str, now_ms: int):
    """
    Return the counter row for a recipient, creating it on first sight.
    A concurrent creator winning the insert race is not an error.
    """
    from sendguard.models import CustomerLimit

    counter = db.get(CustomerLimit, recipient_id)
    if counter is not None:
        return counter

    db.add(CustomerLimit(
        recipient_id=recipient_id,
        hourly_count=0,
        daily_count=0,
        hourly_window_start_ms=now_ms,
        daily_window_start_ms=now_ms,
        total_sent=0,
    ))
    try:
        db.commit()
        logger.debug(f"Created counter for {recipient_id}")
    except IntegrityError:
        db.rollback()
        logger.debug(f"Counter for {recipient_id} created concurrently")
    return db.get(CustomerLimit, recipient_id)


def reset_expired_windows(db: Session, recipient_id: str, now_ms: int):
    """
    Zero whichever windows have expired and restamp them to now.
    Each reset is one conditional UPDATE so concurrent writers cannot interleave.
    """
    from sendguard.models import CustomerLimit

    ensure_counter(db, recipient_id, now_ms)
    db.execute(
        update(CustomerLimit)
        .where(
            CustomerLimit.recipient_id == recipient_id,
            now_ms - CustomerLimit.hourly_window_start_ms > HOUR_MS,
        )
        .values(hourly_count=0, hourly_window_start_ms=now_ms)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(CustomerLimit)
        .where(
            CustomerLimit.recipient_id == recipient_id,
            now_ms - CustomerLimit.daily_window_start_ms > DAY_MS,
        )
        .values(daily_count=0, daily_window_start_ms=now_ms)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return db.execute(
        select(CustomerLimit)
        .where(CustomerLimit.recipient_id == recipient_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def increment_counter(db: Session, recipient_id: str, now_ms: int, commit: bool = True) -> None:
    """
    Count one successful send. Expired windows restart at 1 in the same
    statement, so no read-modify-write happens in Python.

    A recipient without a counter row gets one inserted at 1. With
    commit=False nothing is committed; an IntegrityError from a concurrent
    first insert propagates to the caller.
    """
    from sendguard.models import CustomerLimit

    hourly_expired = now_ms - CustomerLimit.hourly_window_start_ms > HOUR_MS
    daily_expired = now_ms - CustomerLimit.daily_window_start_ms > DAY_MS
    result = db.execute(
        update(CustomerLimit)
        .where(CustomerLimit.recipient_id == recipient_id)
        .values(
            hourly_count=case((hourly_expired, 1), else_=CustomerLimit.hourly_count + 1),
            hourly_window_start_ms=case((hourly_expired, now_ms), else_=CustomerLimit.hourly_window_start_ms),
            daily_count=case((daily_expired, 1), else_=CustomerLimit.daily_count + 1),
            daily_window_start_ms=case((daily_expired, now_ms), else_=CustomerLimit.daily_window_start_ms),
            total_sent=CustomerLimit.total_sent + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(CustomerLimit(
            recipient_id=recipient_id,
            hourly_count=1,
            daily_count=1,
            hourly_window_start_ms=now_ms,
            daily_window_start_ms=now_ms,
            total_sent=1,
        ))
        db.flush()
        logger.debug(f"Created counter for {recipient_id}")
    if commit:
        db.commit()
    logger.debug(f"Counter incremented for {recipient_id}")


def get_counter(db: Session, recipient_id: str):
    from sendguard.models import CustomerLimit

    return db.execute(
        select(CustomerLimit)
        .where(CustomerLimit.recipient_id == recipient_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


# =============================================================================
# System Events & Flags
# =============================================================================

def append_system_event(
    db: Session,
    event_type: str,
    description: Optional[str],
    occurred_at_ms: int,
    data: Optional[dict] = None,
    recipient_id: Optional[str] = None,
    order_id: Optional[str] = None,
    message_type: Optional[str] = None,
) -> None:
    from sendguard.models import SystemEvent

    db.add(SystemEvent(
        event_type=event_type,
        description=description,
        data=json.dumps(data, default=str) if data is not None else None,
        recipient_id=recipient_id,
        order_id=order_id,
        message_type=message_type,
        occurred_at_ms=occurred_at_ms,
    ))
    db.commit()
    logger.info(f"System event: {event_type} - {description}")


def list_system_events(
    db: Session,
    event_types: Optional[Iterable[str]] = None,
    recipient_id: Optional[str] = None,
    limit: int = 50,
) -> List[Any]:
    """Most recent events first."""
    from sendguard.models import SystemEvent

    query = db.query(SystemEvent)
    if event_types:
        query = query.filter(SystemEvent.event_type.in_(list(event_types)))
    if recipient_id:
        query = query.filter(SystemEvent.recipient_id == recipient_id)
    return query.order_by(SystemEvent.occurred_at_ms.desc(), SystemEvent.id.desc()).limit(limit).all()


def get_flag(db: Session, name: str) -> bool:
    from sendguard.models import SafetyFlag

    flag = db.execute(
        select(SafetyFlag)
        .where(SafetyFlag.name == name)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    return bool(flag and flag.active)


def set_flag(db: Session, name: str, active: bool, reason: Optional[str], updated_at_ms: int) -> None:
    from sendguard.models import SafetyFlag

    flag = db.get(SafetyFlag, name)
    if flag is None:
        flag = SafetyFlag(name=name)
        db.add(flag)
    flag.active = active
    flag.reason = reason
    flag.updated_at_ms = updated_at_ms
    db.commit()


def set_kill_switch(
    db: Session,
    active: bool,
    reason: Optional[str],
    now_ms: int,
    source: str,
) -> None:
    """Persist the kill switch and append the matching system event."""
    set_flag(db, KILL_SWITCH_FLAG, active, reason if active else None, now_ms)
    if active:
        append_system_event(db, "kill_switch_activated", reason, now_ms, data={"source": source})
    else:
        append_system_event(
            db, "kill_switch_deactivated", reason or "Manual deactivation", now_ms, data={"source": source}
        )
