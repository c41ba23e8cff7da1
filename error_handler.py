"""Error taxonomy and dead-letter log for hub message ingestion.

Nothing here reaches an end user: every failure in the pipeline is
operational and ends up in the log, the metrics and the dead-letter log.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from metrics import metrics

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Base class for failures inside the ingestion pipeline."""


class MalformedPayload(IngestionError):
    """Payload bytes or shape could not be recognized."""


class RouterFailure(IngestionError):
    """Topic does not look like ``hub/{id}/...``."""


class PersistenceFailure(IngestionError):
    """A CSV row could not be written."""


class ReconciliationFailure(IngestionError):
    """The pending-device transaction for a hub failed and was rolled back."""

    def __init__(self, hub_id: str, message: str):
        super().__init__(f"hub {hub_id}: {message}")
        self.hub_id = hub_id


class NotificationProviderFailure(IngestionError):
    """The push provider rejected a message."""

    def __init__(self, error_code: Optional[str], invalid_token: bool = False):
        super().__init__(error_code or "unknown push error")
        self.error_code = error_code
        self.invalid_token = invalid_token


class DeadLetterLog:
    """
    Bounded in-memory record of messages the pipeline dropped.
    Kept for operational inspection; it never blocks and never raises.
    """

    def __init__(self, max_entries: int = 500):
        """
        Initialize the log.

        Args:
            max_entries: Oldest entries are discarded beyond this size
        """
        self._entries = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(
        self,
        reason: str,
        topic: Optional[str] = None,
        preview: Optional[str] = None,
        hub_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Record a dropped message.

        Args:
            reason: Drop reason (e.g. "malformed_payload", "invalid_topic")
            topic: MQTT topic the message arrived on
            preview: First characters of the payload
            hub_id: Hub id if it could be extracted
            error: Error message, if an exception caused the drop
        """
        entry = {
            "reason": reason,
            "topic": topic,
            "hub_id": hub_id,
            "preview": preview,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._entries.append(entry)
        metrics.record_message_dropped(reason)

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        return list(reversed(entries))[:limit]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


# Global instance
dead_letter_queue = DeadLetterLog()
