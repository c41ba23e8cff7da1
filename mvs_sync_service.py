"""Reconciliation of a hub's pending (unregistered) devices.

Each hub periodically reports the sensors it sees but that are not yet
registered (``pending_devices``). This service mirrors that list into the
``mvs_devices`` table and then republishes the canonical list back to the
hub on ``hub/{id}/receive``.

Per (hub, mac) the record moves between three states:

    absent  --report-->          pending (MVS=true, length/first_time set)
    pending --report-->          pending (length/first_time refreshed)
    pending --omitted/delete-->  cleared (MVS=false, length/first_time null)
    cleared --report-->          pending

Rows are never deleted so the history of what a hub once saw is kept.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal, session_scope
from error_handler import ReconciliationFailure
from message_dispatcher import hub_receive_topic
from metrics import metrics
from models import MvsDevice
from parsers.hub_payloads import PendingDevice, format_timestamp, normalize_mac

logger = logging.getLogger(__name__)

Publisher = Callable[..., bool]


class MvsSyncService:
    """Keeps ``mvs_devices`` in step with what each hub reports as pending."""

    def __init__(self, session_factory=None, publisher: Optional[Publisher] = None):
        self.session_factory = session_factory or SessionLocal
        self.publisher = publisher
        self._hub_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _hub_lock(self, hub_id: str) -> threading.Lock:
        with self._guard:
            return self._hub_locks.setdefault(hub_id, threading.Lock())

    def sync_pending_devices(self, hub_id: str, devices: Sequence[PendingDevice]) -> None:
        """Apply one full ``pending_devices`` report for a hub in a single transaction.

        Raises:
            ReconciliationFailure: the transaction failed and was rolled back.
        """
        reported = {}
        for device in devices:
            mac = normalize_mac(device.mac_address)
            if mac:
                reported[mac] = device

        try:
            with self._hub_lock(hub_id), session_scope(self.session_factory) as session:
                existing = (
                    session.query(MvsDevice)
                    .filter(MvsDevice.hub_id == hub_id)
                    .with_for_update()
                    .all()
                )
                by_mac = {normalize_mac(row.mac_address): row for row in existing}

                cleared = 0
                for mac, row in by_mac.items():
                    if row.mvs and mac not in reported:
                        row.mvs = False
                        row.length = None
                        row.first_time = None
                        cleared += 1

                created = 0
                for mac, device in reported.items():
                    row = by_mac.get(mac)
                    if row is None:
                        session.add(MvsDevice(
                            hub_id=hub_id,
                            mac_address=mac,
                            mvs=True,
                            length=device.data_count,
                            first_time=device.first_time,
                        ))
                        created += 1
                    else:
                        row.mvs = True
                        row.length = device.data_count
                        row.first_time = device.first_time
        except SQLAlchemyError as e:
            metrics.record_reconciliation(False)
            raise ReconciliationFailure(hub_id, str(e)) from e

        metrics.record_reconciliation(True)
        logger.info(
            f"[MVS Sync] Synced hub {hub_id}: reported={len(reported)}, "
            f"created={created}, cleared={cleared}"
        )

    def handle_delete(self, hub_id: str, mac_address: str) -> bool:
        """Clear one pending device on explicit ``delete:{mac}``.

        Returns:
            True if a record existed and was cleared.
        """
        mac = normalize_mac(mac_address)
        if not mac:
            return False

        try:
            with self._hub_lock(hub_id), session_scope(self.session_factory) as session:
                row = (
                    session.query(MvsDevice)
                    .filter(MvsDevice.hub_id == hub_id, MvsDevice.mac_address == mac)
                    .one_or_none()
                )
                if row is None:
                    logger.info(f"[MVS Delete] No record for hub {hub_id}, mac {mac}")
                    return False
                row.mvs = False
                row.length = None
                row.first_time = None
        except SQLAlchemyError as e:
            metrics.record_reconciliation(False)
            raise ReconciliationFailure(hub_id, str(e)) from e

        logger.info(f"[MVS Delete] Device cleared: hub {hub_id}, mac {mac}")
        return True

    def build_pending_payload(self, hub_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """The hub's canonical list in ``pending_devices`` wire shape."""
        session = self.session_factory()
        try:
            rows = (
                session.query(MvsDevice)
                .filter(MvsDevice.hub_id == hub_id, MvsDevice.mvs == True)  # noqa: E712
                .order_by(MvsDevice.id)
                .all()
            )
            pending = [
                {
                    "mac_address": row.mac_address,
                    "data_count": row.length if row.length is not None else 0,
                    "first_time": format_timestamp(row.first_time) if row.first_time else "",
                }
                for row in rows
            ]
        finally:
            session.close()
        return {"pending_devices": pending}

    def republish(self, hub_id: str, publisher: Optional[Publisher] = None) -> bool:
        """Publish the canonical pending list to ``hub/{id}/receive``.

        Not retried on failure; the hub's next report triggers another republish.
        """
        publish = publisher or self.publisher
        if publish is None:
            logger.error("[MVS Republish] No publisher configured")
            metrics.record_republish(False)
            return False

        payload = self.build_pending_payload(hub_id)
        ok = bool(publish(hub_receive_topic(hub_id), payload))
        metrics.record_republish(ok)
        if ok:
            logger.info(f"[MVS Republish] Published hub {hub_id}: {len(payload['pending_devices'])} devices")
        else:
            logger.warning(f"[MVS Republish] Publish failed for hub {hub_id} (client not connected?)")
        return ok

    def process_report(self, hub_id: str, devices: Sequence[PendingDevice]) -> bool:
        """Sync a report then republish; returns whether the republish went out."""
        try:
            self.sync_pending_devices(hub_id, devices)
        except ReconciliationFailure as e:
            logger.error(f"[MVS Sync] Reconciliation failed, republish skipped: {e}", exc_info=True)
            return False
        return self.republish(hub_id)

    def process_delete(self, hub_id: str, mac_address: str) -> bool:
        try:
            self.handle_delete(hub_id, mac_address)
        except ReconciliationFailure as e:
            logger.error(f"[MVS Delete] Failed, republish skipped: {e}", exc_info=True)
            return False
        return self.republish(hub_id)


# Global instance; the MQTT handler is attached as publisher at startup
mvs_sync_service = MvsSyncService()
