"""Background worker that batches live telemetry for WebSocket clients.

Samples arrive at whatever rate the hubs send them. Instead of one socket
message per sample, the worker buffers samples per device and flushes them
on a fixed timer, never broadcasting to the same device more often than the
minimum interval, so a chatty hub cannot flood connected clients.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from config import settings
from routers.websocket import connection_manager

logger = logging.getLogger(__name__)


class TelemetryBroadcastWorker:
    """Per-device bounded sample queues drained on a timer."""

    def __init__(
        self,
        broadcaster=None,
        max_samples_per_device: Optional[int] = None,
        recent_limit: Optional[int] = None,
        broadcast_interval: Optional[float] = None,
        min_broadcast_interval: Optional[float] = None,
        idle_eviction_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broadcaster = broadcaster if broadcaster is not None else connection_manager
        self.max_samples_per_device = max_samples_per_device or settings.telemetry_max_samples_per_device
        self.recent_limit = recent_limit or settings.telemetry_recent_limit
        self.broadcast_interval = broadcast_interval or settings.telemetry_broadcast_interval_seconds
        self.min_broadcast_interval = (
            settings.telemetry_min_broadcast_interval_seconds
            if min_broadcast_interval is None else min_broadcast_interval
        )
        self.idle_eviction_seconds = (
            settings.telemetry_idle_eviction_seconds
            if idle_eviction_seconds is None else idle_eviction_seconds
        )
        self.clock = clock

        self._pending: Dict[str, Deque[Dict[str, Any]]] = {}
        self._recent: Dict[str, Deque[Dict[str, Any]]] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._last_broadcast: Dict[str, float] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

        self.samples_received = 0
        self.samples_overflowed = 0

        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, device_id: str, data: Dict[str, Any], timestamp: Optional[str] = None) -> None:
        """Buffer one sample for the next flush."""
        if not device_id:
            return
        key = device_id.lower()
        sample = {
            "deviceId": key,
            "timestamp": timestamp,
            "data": data,
            "receivedAt": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                pending = deque(maxlen=self.max_samples_per_device)
                self._pending[key] = pending
            if len(pending) == pending.maxlen:
                # Oldest sample is evicted by the bounded deque
                self.samples_overflowed += 1
            pending.append(sample)

            recent = self._recent.get(key)
            if recent is None:
                recent = deque(maxlen=self.recent_limit)
                self._recent[key] = recent
            recent.append(sample)
            self._latest[key] = sample
            self._last_seen[key] = self.clock()
            self.samples_received += 1

    def flush(self) -> int:
        """Broadcast every device whose queue is non-empty and whose interval has elapsed.

        Returns:
            Number of devices broadcast.
        """
        now = self.clock()
        batches: List[tuple] = []
        with self._lock:
            for device_id, pending in self._pending.items():
                if not pending:
                    continue
                last = self._last_broadcast.get(device_id)
                if last is not None and now - last < self.min_broadcast_interval:
                    continue
                batches.append((device_id, list(pending)))
                pending.clear()
                self._last_broadcast[device_id] = now
            self._evict_idle(now)

        for device_id, samples in batches:
            payload = {"deviceId": device_id, "samples": samples, "count": len(samples)}
            try:
                self.broadcaster.broadcast_to_device(device_id, "telemetry", payload)
            except Exception as exc:
                logger.warning("Telemetry broadcast failed for device_id=%s: %s", device_id, exc)
        return len(batches)

    def _evict_idle(self, now: float) -> None:
        """Forget devices that have sent nothing for the idle window. Caller holds the lock."""
        idle = [
            device_id for device_id, seen in self._last_seen.items()
            if now - seen >= self.idle_eviction_seconds and not self._pending.get(device_id)
        ]
        for device_id in idle:
            for buffers in (self._pending, self._recent, self._latest, self._last_broadcast, self._last_seen):
                buffers.pop(device_id, None)
        if idle:
            logger.debug("Evicted %d idle telemetry devices", len(idle))

    def device_count(self) -> int:
        with self._lock:
            return len(self._last_seen)

    def get_recent_data(self, device_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            recent = list(self._recent.get(device_id.lower(), ()))
        return recent[-limit:] if limit > 0 else []

    def get_all_recent_data(self, limit: int = 100) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            snapshot = {device_id: list(samples) for device_id, samples in self._recent.items()}
        return {device_id: samples[-limit:] if limit > 0 else [] for device_id, samples in snapshot.items()}

    def get_latest_telemetry(self, device_id: Optional[str] = None):
        """Latest sample for one device, or a dict of all latest samples."""
        with self._lock:
            if device_id is None:
                return dict(self._latest)
            return self._latest.get(device_id.lower())

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(p) for p in self._pending.values())

    def _worker_loop(self) -> None:
        while not self._shutdown.wait(self.broadcast_interval):
            try:
                self.flush()
            except Exception as exc:
                logger.exception("Telemetry worker flush failed: %s", exc)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Telemetry worker is already running")
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._worker_loop, name="telemetry-broadcast", daemon=True)
        self._thread.start()
        logger.info(
            "Telemetry worker started: interval=%.2fs, min_interval=%.2fs",
            self.broadcast_interval,
            self.min_broadcast_interval,
        )

    def stop(self) -> None:
        if not self.is_running:
            return
        self._shutdown.set()
        self._thread.join(timeout=5)
        self._thread = None
        logger.info("Telemetry worker stopped.")


# Global worker instance
telemetry_worker = TelemetryBroadcastWorker()
