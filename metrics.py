"""Metrics and monitoring for the hub ingestion pipeline."""
import threading
import time
from collections import defaultdict
from typing import Dict, Any
import logging

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects in-process counters for the ingestion pipeline.
    Tracks message counts, drops, CSV writes, reconciliations and notifications.
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        with self._lock:
            # Message counters
            self.messages_received = defaultdict(int)  # {hub_id: count}
            self.messages_by_topic = defaultdict(int)  # {topic kind: count}
            self.messages_by_shape = defaultdict(int)  # {parsed shape: count}
            self.messages_dropped = defaultdict(int)  # {reason: count}
            self.queue_overflows = 0

            # Persistence
            self.csv_rows_written = defaultdict(int)  # {scope: count}
            self.csv_rows_failed = defaultdict(int)  # {scope: count}

            # Reconciliation
            self.reconciliations = 0
            self.reconciliation_failures = 0
            self.republish_ok = 0
            self.republish_failed = 0

            # Notifications
            self.notifications = defaultdict(int)  # {outcome: count}

            # Real-time broadcasts
            self.broadcasts = 0

            self.hub_last_seen = {}  # {hub_id: timestamp}
            self.processing_times = []
            self.start_time = time.time()

    def record_message_received(self, hub_id: str, topic_kind: str):
        """Record that a message was received from a hub."""
        with self._lock:
            self.messages_received[hub_id] += 1
            self.messages_by_topic[topic_kind] += 1
            self.hub_last_seen[hub_id] = time.time()

    def record_shape(self, shape: str):
        with self._lock:
            self.messages_by_shape[shape] += 1

    def record_message_dropped(self, reason: str):
        """Record that a message was dropped."""
        with self._lock:
            self.messages_dropped[reason] += 1
        logger.debug(f"Message dropped: {reason}")

    def record_queue_overflow(self):
        with self._lock:
            self.queue_overflows += 1

    def record_csv_row(self, scope: str):
        with self._lock:
            self.csv_rows_written[scope] += 1

    def record_csv_failure(self, scope: str):
        with self._lock:
            self.csv_rows_failed[scope] += 1

    def record_reconciliation(self, success: bool):
        with self._lock:
            if success:
                self.reconciliations += 1
            else:
                self.reconciliation_failures += 1

    def record_republish(self, success: bool):
        with self._lock:
            if success:
                self.republish_ok += 1
            else:
                self.republish_failed += 1

    def record_notification(self, outcome: str):
        """Record a disconnect notification outcome (sent, suppressed, failed, no_token, token_cleared)."""
        with self._lock:
            self.notifications[outcome] += 1

    def record_broadcast(self):
        with self._lock:
            self.broadcasts += 1

    def record_processing_time(self, duration_ms: float):
        """Record message processing time."""
        with self._lock:
            self.processing_times.append(duration_ms)
            # Keep only last 1000 processing times
            if len(self.processing_times) > 1000:
                self.processing_times = self.processing_times[-1000:]

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        with self._lock:
            uptime = time.time() - self.start_time
            times = self.processing_times
            avg_time = sum(times) / len(times) if times else 0.0
            return {
                "uptime_seconds": uptime,
                "messages": {
                    "received_total": sum(self.messages_received.values()),
                    "by_hub": dict(self.messages_received),
                    "by_topic": dict(self.messages_by_topic),
                    "by_shape": dict(self.messages_by_shape),
                    "dropped": dict(self.messages_dropped),
                    "queue_overflows": self.queue_overflows,
                },
                "csv": {
                    "rows_written": dict(self.csv_rows_written),
                    "rows_failed": dict(self.csv_rows_failed),
                },
                "reconciliation": {
                    "completed": self.reconciliations,
                    "failed": self.reconciliation_failures,
                    "republish_ok": self.republish_ok,
                    "republish_failed": self.republish_failed,
                },
                "notifications": dict(self.notifications),
                "broadcasts": self.broadcasts,
                "processing_ms_avg": avg_time,
                "active_hubs": len(self.hub_last_seen),
            }


# Global metrics instance
metrics = MetricsCollector()
