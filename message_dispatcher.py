"""Topic routing and non-blocking dispatch of hub messages.

The paho network thread only calls ``MessageDispatcher.submit``, which puts
the message on a bounded queue and returns. A small pool of worker threads
parses each message and runs the matching handler (CSV append, pending
device reconciliation, disconnect workflow), so a slow file write or
database transaction never stalls the MQTT read loop.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from config import settings
from csv_writer import BLE_HEADER, LEGACY_HEADER, VITALS_HEADER, DailyCsvWriter
from error_handler import MalformedPayload, RouterFailure, dead_letter_queue
from metrics import metrics
from parsers.hub_payloads import (
    DeleteSignal,
    DisconnectSignal,
    InlineSample,
    LegacySample,
    PendingDevicesReport,
    RawMessage,
    TelemetryBatch,
    data_topic_parser,
    format_number,
    format_timestamp,
    send_topic_parser,
)

logger = logging.getLogger(__name__)

TOPIC_ROOT = "hub"
DATA_TOPIC = "data"
SEND_TOPIC = "send"
SUBSCRIPTIONS = (f"{TOPIC_ROOT}/+/{DATA_TOPIC}", f"{TOPIC_ROOT}/+/{SEND_TOPIC}")
RECEIVE_TOPIC = "receive"

# CSV scopes
SCOPE_HUB = "hub"
SCOPE_DEVICE = "device"
SCOPE_LEGACY = "legacy"


@dataclass
class HubMessage:
    topic: str
    payload: Union[bytes, str]
    received_at: float = field(default_factory=time.time)


def hub_receive_topic(hub_id: str) -> str:
    """Command topic a hub listens on."""
    return f"{TOPIC_ROOT}/{hub_id}/{RECEIVE_TOPIC}"


def parse_topic(topic: str) -> Tuple[str, str]:
    """Split ``hub/{id}/{kind}`` into ``(hub_id, kind)``.

    Raises:
        RouterFailure: topic is not a hub data/send topic or the hub id is empty.
    """
    if not isinstance(topic, str):
        raise RouterFailure(f"topic is not a string: {topic!r}")
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != TOPIC_ROOT:
        raise RouterFailure(f"unexpected topic shape: {topic}")
    hub_id, kind = parts[1].strip(), parts[2]
    if not hub_id:
        raise RouterFailure(f"empty hub id in topic: {topic}")
    if kind not in (DATA_TOPIC, SEND_TOPIC):
        raise RouterFailure(f"unsupported topic kind '{kind}': {topic}")
    return hub_id, kind


class HubMessageRouter:
    """Parses one hub message and runs the handler for its shape."""

    def __init__(
        self,
        csv_writer: DailyCsvWriter,
        mvs_service=None,
        disconnect_service=None,
        telemetry_worker=None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.csv_writer = csv_writer
        self.mvs_service = mvs_service
        self.disconnect_service = disconnect_service
        self.telemetry_worker = telemetry_worker
        self.clock = clock
        self._parsers = {DATA_TOPIC: data_topic_parser, SEND_TOPIC: send_topic_parser}
        self._handlers: Dict[type, Callable] = {
            DisconnectSignal: self._handle_disconnect,
            DeleteSignal: self._handle_delete,
            PendingDevicesReport: self._handle_pending_devices,
            TelemetryBatch: self._handle_telemetry_batch,
            LegacySample: self._handle_legacy_sample,
            InlineSample: self._handle_inline_sample,
        }

    def route(self, topic: str, payload: Union[bytes, str]) -> Optional[str]:
        """Handle one message; returns the name of the shape handled, or None if dropped."""
        try:
            hub_id, kind = parse_topic(topic)
        except RouterFailure as e:
            if isinstance(topic, str) and topic.startswith(f"{TOPIC_ROOT}/"):
                logger.warning(f"Dropping message on malformed hub topic: {e}")
            else:
                # Shared brokers carry unrelated traffic
                logger.debug(f"Ignoring message: {e}")
            dead_letter_queue.record("invalid_topic", topic=str(topic), error=str(e))
            return None

        metrics.record_message_received(hub_id, kind)
        message = RawMessage(payload)
        try:
            parsed = self._parsers[kind].parse(message)
            if parsed is None:
                raise MalformedPayload(f"unrecognized payload on {topic}")
        except MalformedPayload as e:
            logger.warning(f"{e}: {message.preview()!r}")
            dead_letter_queue.record("malformed_payload", topic=topic, hub_id=hub_id, preview=message.preview())
            return None

        shape = type(parsed).__name__
        metrics.record_shape(shape)
        self._handlers[type(parsed)](hub_id, parsed)
        return shape

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_disconnect(self, hub_id: str, signal: DisconnectSignal) -> None:
        logger.info(f"Disconnect received: hub={hub_id}, device={signal.mac_address}")
        if self.disconnect_service is None:
            logger.warning("No disconnect service configured, signal ignored")
            return
        self.disconnect_service.handle_disconnected(signal.mac_address, hub_id=hub_id)

    def _handle_delete(self, hub_id: str, signal: DeleteSignal) -> None:
        if self.mvs_service is None:
            logger.warning("No MVS service configured, delete ignored")
            return
        self.mvs_service.process_delete(hub_id, signal.mac_address)

    def _handle_pending_devices(self, hub_id: str, report: PendingDevicesReport) -> None:
        if self.mvs_service is None:
            logger.warning("No MVS service configured, pending report ignored")
            return
        self.mvs_service.process_report(hub_id, report.devices)

    def _handle_telemetry_batch(self, hub_id: str, batch: TelemetryBatch) -> None:
        if batch.dropped:
            logger.warning(f"Hub {hub_id}: dropped {batch.dropped} invalid rows from batch")
            for _ in range(batch.dropped):
                metrics.record_message_dropped("invalid_row")
        if not batch.rows:
            return

        rows = [
            (row.date_key, [row.timestamp] + [format_number(v) for v in row.vitals.as_list()])
            for row in batch.rows
        ]
        written = self.csv_writer.append_rows(SCOPE_HUB, hub_id, VITALS_HEADER, rows)
        logger.debug(f"Hub {hub_id}: wrote {written}/{len(rows)} batch rows")

        if self.telemetry_worker is not None:
            for row in batch.rows:
                vitals = row.vitals
                self.telemetry_worker.enqueue(hub_id, {
                    "envTemp": vitals.env_temp,
                    "heartRate": vitals.heart_rate,
                    "respRate": vitals.resp_rate,
                    "bodyTemp": vitals.body_temp,
                    "activity": vitals.activity,
                }, row.timestamp)

    def _handle_legacy_sample(self, hub_id: str, sample: LegacySample) -> None:
        cells = [sample.timestamp, sample.device_id] + list(sample.values)
        self.csv_writer.append_row(SCOPE_LEGACY, hub_id, sample.date_key, LEGACY_HEADER, cells)
        if self.telemetry_worker is not None:
            self.telemetry_worker.enqueue(sample.device_id, {"values": list(sample.values)}, sample.timestamp)

    def _handle_inline_sample(self, hub_id: str, sample: InlineSample) -> None:
        now = self.clock()
        timestamp = format_timestamp(now)
        cells = [
            timestamp,
            format_number(sample.heart_rate),
            format_number(sample.spo2),
            format_number(sample.temperature),
            format_number(sample.battery),
            format_number(sample.sampling_rate),
        ]
        self.csv_writer.append_row(SCOPE_DEVICE, sample.mac_address, now.strftime("%Y-%m-%d"), BLE_HEADER, cells)
        if self.telemetry_worker is not None:
            data = sample.to_dict()
            data["hubId"] = hub_id
            self.telemetry_worker.enqueue(sample.mac_address, data, timestamp)


class MessageDispatcher:
    """
    Bounded work queue drained by a pool of worker threads.
    ``submit`` never blocks; when the queue is full the message is dropped
    and counted, which is the hook for back-pressure alerts.
    """

    def __init__(self, router: HubMessageRouter, workers: Optional[int] = None, queue_size: Optional[int] = None):
        self.router = router
        self.workers = workers or settings.dispatcher_workers
        self._queue: "queue.Queue[Optional[HubMessage]]" = queue.Queue(maxsize=queue_size or settings.dispatcher_queue_size)
        self._threads: List[threading.Thread] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def queue_depth(self) -> int:
        return self._queue.qsize()

    def submit(self, topic: str, payload: Union[bytes, str]) -> bool:
        """Hand a message to the worker pool. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(HubMessage(topic=topic, payload=payload))
            return True
        except queue.Full:
            metrics.record_queue_overflow()
            dead_letter_queue.record("queue_full", topic=topic)
            logger.warning(f"Dispatch queue full ({self._queue.maxsize}), dropping message on {topic}")
            return False

    def process(self, message: HubMessage) -> Optional[str]:
        """Run one message through the router; any failure is logged, never raised."""
        start_time = time.time()
        try:
            return self.router.route(message.topic, message.payload)
        except Exception as e:
            logger.error(f"Error processing message on {message.topic}: {e}", exc_info=True)
            dead_letter_queue.record("handler_error", topic=message.topic, error=str(e))
            return None
        finally:
            metrics.record_processing_time((time.time() - start_time) * 1000)

    def _worker_loop(self):
        while True:
            message = self._queue.get()
            try:
                if message is None:
                    return
                self.process(message)
            finally:
                self._queue.task_done()

    def start(self):
        """Start the worker threads."""
        if self._running:
            logger.warning("Message dispatcher is already running")
            return
        self._running = True
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"hub-dispatch-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Message dispatcher started with {self.workers} workers")

    def join(self):
        """Block until every queued message has been processed."""
        self._queue.join()

    def stop(self, timeout: float = 5.0):
        """Drain queued messages and stop the workers."""
        if not self._running:
            return
        self._running = False
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Message dispatcher stopped")
