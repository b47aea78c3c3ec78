import logging

from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from sendguard.clock import DAY_MS
from sendguard.schemas import CheckResult, ReasonCode
from sendguard.storage import get_recent_records

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8
SIMILARITY_WINDOW_MS = DAY_MS


def similarity_ratio(first: str, second: str) -> float:
    """1 - Levenshtein distance / longer length; two empty strings are identical."""
    return Levenshtein.normalized_similarity(first or "", second or "")


class SimilarityGuard:
    """Rejects content nearly identical to something the recipient got in the last 24h."""

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.threshold = threshold

    def check_similarity(self, db: Session, recipient_id: str, content: str, now_ms: int) -> CheckResult:
        if not content:
            return CheckResult.passed()
        for record in get_recent_records(db, recipient_id, now_ms - SIMILARITY_WINDOW_MS):
            if not record.content:
                continue
            ratio = similarity_ratio(content, record.content)
            if ratio > self.threshold:
                logger.info(
                    f"Content {ratio:.3f} similar to {record.message_type} for order {record.order_id}"
                )
                return CheckResult.blocked(
                    ReasonCode.CONTENT_TOO_SIMILAR,
                    f"Message content {ratio * 100:.1f}% similar to recent message",
                )
        return CheckResult.passed()
