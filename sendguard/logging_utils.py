import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, TextIO

from pythonjsonlogger import jsonlogger


# decision_id of the evaluation running in the current task
decision_id_ctx: ContextVar[Optional[str]] = ContextVar("decision_id", default=None)

LOG_FORMAT = "%(ts)s %(level)s %(name)s %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with a UTC `ts`, the level name and the active decision_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            stamp = datetime.fromtimestamp(record.created, timezone.utc)
            log_record['ts'] = stamp.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Explicit extra= wins over the context value
        decision_id = decision_id_ctx.get()
        if decision_id and 'decision_id' not in log_record:
            log_record['decision_id'] = decision_id


def setup_logging(log_level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Route all records through one JSON handler on the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        stream: defaults to stdout
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(CustomJsonFormatter(LOG_FORMAT))
    root.addHandler(handler)

    # SQL echo would drown decision logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    return root


def log_decision(
    logger: logging.Logger,
    decision,
    recipient_id: str,
    order_id: str,
    message_type: str,
    latency_ms: float,
) -> None:
    """
    Log one gate verdict with its trace fields.

    Policy rejections are expected traffic and are logged at INFO;
    only SAFETY_CHECK_ERROR is logged at ERROR.
    """
    log_data = {
        "decision_id": decision.decision_id,
        "recipient_id": recipient_id,
        "order_id": order_id,
        "message_type": message_type,
        "allowed": decision.allowed,
        "reason_code": decision.reason_code.value,
        "latency_ms": latency_ms,
    }
    if decision.reason_code.value == "SAFETY_CHECK_ERROR":
        logger.error(decision.human_message, extra=log_data)
    else:
        logger.info(decision.human_message, extra=log_data)
