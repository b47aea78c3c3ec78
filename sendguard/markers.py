"""
Side-channel "sent" markers kept on disk next to the database.

The marker for a (recipient, order, type) key is written after the ledger
row, outside the database transaction, so a lost ledger write still leaves
a trace the duplicate detector can see.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

class MarkerStore:
    def __init__(self, directory):
        self.directory = Path(directory)

    def path_for(self, recipient_id: str, order_id: str, message_type: str) -> Path:
        """One file per key, named by a digest of the JSON-encoded key."""
        key = json.dumps([str(recipient_id), str(order_id), str(message_type)])
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"backup_{digest}.json"

    def write(
        self,
        recipient_id: str,
        order_id: str,
        message_type: str,
        content_hash: str,
        sent_at_ms: int,
        succeeded: bool,
        error_detail: Optional[str] = None,
    ) -> Path:
        """Atomically replace the marker file for a key."""
        path = self.path_for(recipient_id, order_id, message_type)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        payload = {
            "recipient_id": recipient_id,
            "order_id": order_id,
            "message_type": message_type,
            "content_hash": content_hash,
            "sent_at_ms": sent_at_ms,
            "sent": succeeded,
            "error_detail": error_detail,
        }
        try:
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        return path

    def read(self, recipient_id: str, order_id: str, message_type: str) -> Optional[dict]:
        """
        Return the marker payload, or None when missing.
        Unreadable markers are logged and treated as missing; the ledger stays authoritative.
        """
        path = self.path_for(recipient_id, order_id, message_type)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable marker {path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed marker {path}")
            return None
        return data

    def sent_since(self, recipient_id: str, order_id: str, message_type: str, since_ms: int) -> bool:
        data = self.read(recipient_id, order_id, message_type)
        if not data or data.get("sent") is not True:
            return False
        stored_key = (data.get("recipient_id"), data.get("order_id"), data.get("message_type"))
        if stored_key != (recipient_id, order_id, message_type):
            logger.warning(f"Ignoring marker for {stored_key} found under {recipient_id}/{order_id}/{message_type}")
            return False
        try:
            return int(data.get("sent_at_ms", 0)) > since_ms
        except (TypeError, ValueError):
            return False
