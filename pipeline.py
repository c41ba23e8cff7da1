"""Wiring of the ingestion pipeline: MQTT -> dispatcher -> handlers.

Used by the FastAPI lifespan in ``main.py``; can also run on its own
(``python pipeline.py``) when only ingestion is wanted, without the HTTP API.
"""

import logging
import signal
import threading
from typing import Any, Dict

from config import settings
from csv_writer import DailyCsvWriter
from device_disconnect_service import device_disconnect_service
from message_dispatcher import HubMessageRouter, MessageDispatcher
from mqtt_client import mqtt_handler
from mvs_sync_service import mvs_sync_service
from telemetry_worker import telemetry_worker

logger = logging.getLogger(__name__)

csv_writer = DailyCsvWriter(settings.csv_base_dir)
hub_router = HubMessageRouter(
    csv_writer,
    mvs_service=mvs_sync_service,
    disconnect_service=device_disconnect_service,
    telemetry_worker=telemetry_worker,
)
dispatcher = MessageDispatcher(hub_router)

SHUTDOWN = threading.Event()


def start_pipeline() -> None:
    """Start workers first, then connect MQTT so no message arrives before a worker exists."""
    dispatcher.start()
    telemetry_worker.start()

    mvs_sync_service.publisher = mqtt_handler.publish
    mqtt_handler.dispatcher = dispatcher
    try:
        mqtt_handler.connect()
        logger.info("MQTT handler started, CSV directory: %s", csv_writer.base_dir)
    except Exception as exc:
        logger.warning("Failed to connect to MQTT broker: %s. Continuing without MQTT...", exc)


def stop_pipeline() -> None:
    mqtt_handler.disconnect()
    logger.info("MQTT handler stopped")
    dispatcher.stop()
    telemetry_worker.stop()


def pipeline_status() -> Dict[str, Any]:
    return {
        "mqtt_connected": mqtt_handler.is_connected,
        "dispatcher_running": dispatcher.is_running,
        "dispatcher_queue_depth": dispatcher.queue_depth(),
        "telemetry_worker_running": telemetry_worker.is_running,
        "telemetry_pending_samples": telemetry_worker.pending_count(),
        "csv_base_dir": csv_writer.base_dir,
    }


def _handle_signal(signum, frame):
    logger.info("Received signal %s, shutting down ingestion.", signum)
    SHUTDOWN.set()


def run_forever() -> None:
    from database import Base, engine

    Base.metadata.create_all(bind=engine)
    start_pipeline()
    try:
        while not SHUTDOWN.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down ingestion.")
    finally:
        stop_pipeline()
        logger.info("Ingestion stopped.")


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    run_forever()
