import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from sendguard.circuit_breaker import CircuitBreaker
from sendguard.clock import Clock, SystemClock
from sendguard.markers import MarkerStore
from sendguard.metrics import record_delivery_outcome
from sendguard.schemas import ReasonCode, RecordResult
from sendguard.storage import insert_message_record, session_scope
from sendguard.utils import content_hash

logger = logging.getLogger(__name__)


class Recorder:
    """
    Commits the outcome of a delivery attempt.

    Call exactly once per attempt, successful or not. Only successful
    attempts consume rate-limit budget. A second successful row for the
    same (recipient, order, type) is refused by the ledger's unique index
    and reported as a duplicate without touching the counters.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        markers: MarkerStore,
        circuit_breaker: CircuitBreaker,
        clock: Optional[Clock] = None,
    ):
        self.session_factory = session_factory
        self.markers = markers
        self.circuit_breaker = circuit_breaker
        self.clock = clock or SystemClock()

    def record_outcome(
        self,
        recipient_id: str,
        order_id: str,
        message_type: str,
        content: str,
        succeeded: bool,
        error_detail: Optional[str] = None,
    ) -> RecordResult:
        """
        Write the ledger row and (on success) the counters in one
        transaction, then the marker outside it.

        Raises:
            SafetyStoreError: the ledger or counters could not be written;
                nothing was committed
        """
        now_ms = self.clock.now_ms()
        digest = content_hash(content)

        for attempt in (1, 2):
            with session_scope(self.session_factory) as db:
                created, is_duplicate = insert_message_record(
                    db,
                    recipient_id=recipient_id,
                    order_id=order_id,
                    message_type=message_type,
                    content_hash=digest,
                    content=content,
                    sent_at_ms=now_ms,
                    succeeded=succeeded,
                    error_detail=error_detail,
                    commit=False,
                )
                if is_duplicate:
                    logger.warning(
                        f"Refused second successful record: {recipient_id}/{order_id}/{message_type}"
                    )
                    record_delivery_outcome("duplicate")
                    return RecordResult(
                        recorded=False,
                        duplicate=True,
                        reason_code=ReasonCode.LEDGER_DUPLICATE,
                        content_hash=digest,
                    )
                try:
                    if succeeded:
                        self.circuit_breaker.record_send(db, recipient_id, now_ms, commit=False)
                    db.commit()
                    break
                except IntegrityError:
                    # Another writer created this recipient's counter row first
                    db.rollback()
                    if attempt == 2:
                        raise
                    logger.info(f"Counter for {recipient_id} created concurrently, retrying")

        marker_written = self._write_marker(
            recipient_id, order_id, message_type, digest, now_ms, succeeded, error_detail
        )
        record_delivery_outcome("sent" if succeeded else "failed")
        logger.info(
            f"Recorded {message_type} for {recipient_id}/{order_id}: succeeded={succeeded}"
        )
        return RecordResult(
            recorded=created,
            duplicate=False,
            content_hash=digest,
            marker_written=marker_written,
        )

    def _write_marker(self, recipient_id, order_id, message_type, digest, now_ms, succeeded, error_detail) -> bool:
        # A failed attempt never overwrites an existing "sent" marker
        if not succeeded:
            existing = self.markers.read(recipient_id, order_id, message_type)
            if existing and existing.get("sent") is True:
                return False
        try:
            self.markers.write(
                recipient_id, order_id, message_type, digest, now_ms, succeeded, error_detail
            )
        except OSError:
            logger.exception(f"Marker write failed for {recipient_id}/{order_id}/{message_type}")
            return False
        return True
