"""
Utility functions for content hashing and tolerant parsing of upstream fields.
"""

import hashlib
import logging
import re
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

TRUTHY_FLAGS = frozenset({"yes", "y", "true", "1", "sent", "done"})

_AMOUNT_NOISE = re.compile(r"[^0-9.\-]")


def normalize_content(content: Optional[str]) -> str:
    """Case-fold and trim rendered message text."""
    return (content or "").strip().casefold()


def content_hash(content: Optional[str]) -> str:
    """
    Stable digest of normalized content.

    Returns:
        First 16 hex characters of the SHA-256 of the normalized text
    """
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()[:16]


def parse_flag(value: Any) -> bool:
    """
    Interpret an upstream "already notified" cell.

    Spreadsheet columns arrive as "Yes"/"No", "TRUE", booleans or blanks;
    anything unrecognized counts as not set.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_FLAGS


def parse_amount(value: Any) -> float:
    """
    Parse a currency cell such as "₹1,250.50" into a float.
    Blank or unparseable values count as zero.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    cleaned = _AMOUNT_NOISE.sub("", str(value))
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        logger.debug(f"Unparseable amount: {value!r}")
        return 0.0


def lookup_field(name: str, *sources: Mapping[str, Any]) -> Any:
    """Return the first non-blank value for a field across the given maps."""
    for source in sources:
        if not source:
            continue
        value = source.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None
