"""Handling of ``disconnected:{mac}`` signals from hubs.

Looks up the device, applies the cooldown, marks it offline, tells the
owner's open app sessions over the socket and sends a push notification.
Duplicate disconnects are routine on flaky links, so every check is an
early exit rather than an error.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import func

from config import settings
from database import SessionLocal, session_scope
from metrics import metrics
from models import Device, DeviceStatus, User
from notification_service import push_service as default_push_service
from parsers.hub_payloads import normalize_mac
from routers.websocket import connection_manager

logger = logging.getLogger(__name__)

DISCONNECT_EVENTS = ("DEVICE_DISCONNECTED", "device_disconnected")


class DisconnectOutcome:
    """What ``handle_disconnected`` ended up doing."""
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    ALREADY_OFFLINE = "already_offline"
    SUPPRESSED = "suppressed"  # inside cooldown window
    NO_TOKEN = "no_token"
    SENT = "sent"
    FAILED = "failed"
    TOKEN_CLEARED = "token_cleared"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def find_device_by_mac(session, mac_address: str) -> Optional[Device]:
    """Case-insensitive lookup of a device by address."""
    normalized = normalize_mac(mac_address)
    if not normalized:
        return None
    return session.query(Device).filter(func.lower(Device.address) == normalized).first()


class DeviceDisconnectService:
    """Cooldown-gated disconnect notification workflow."""

    def __init__(
        self,
        session_factory=None,
        push=None,
        broadcaster=None,
        cooldown_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.push = push or default_push_service
        self.broadcaster = broadcaster if broadcaster is not None else connection_manager
        seconds = settings.disconnect_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        self.cooldown = timedelta(seconds=seconds)
        self.clock = clock or _utcnow
        self._device_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _device_lock(self, address: str) -> threading.Lock:
        with self._guard:
            return self._device_locks.setdefault(address, threading.Lock())

    def handle_disconnected(self, mac_address: str, hub_id: Optional[str] = None) -> str:
        """Process one disconnect signal.

        Args:
            mac_address: Device address from the signal (normalized here again)
            hub_id: Hub that relayed the signal, for logging only

        Returns:
            One of the DisconnectOutcome values.
        """
        normalized = normalize_mac(mac_address)
        if not normalized:
            logger.warning("[deviceDisconnected] Missing mac address")
            return DisconnectOutcome.INVALID

        now = self.clock()
        # Status check and offline update commit under the lock, so a retried
        # signal on another worker sees the device offline
        with self._device_lock(normalized), session_scope(self.session_factory) as session:
            device = find_device_by_mac(session, normalized)
            if device is None:
                logger.warning(f"[deviceDisconnected] Device not found: {normalized} (hub {hub_id})")
                return DisconnectOutcome.NOT_FOUND

            if device.status == DeviceStatus.OFFLINE:
                logger.info(f"[deviceDisconnected] Already offline, ignoring: {device.address}")
                return DisconnectOutcome.ALREADY_OFFLINE

            last = device.last_disconnected_at
            in_cooldown = last is not None and now - last < self.cooldown

            token = None
            if not in_cooldown:
                user = session.get(User, device.user_email)
                if user is not None and isinstance(user.fcm_token, str) and user.fcm_token.strip():
                    token = user.fcm_token.strip()

            device.status = DeviceStatus.OFFLINE
            device.last_disconnected_at = now

            address = device.address
            device_name = device.name or device.address
            hub_address = device.hub_address
            user_email = device.user_email

        logger.info(f"[deviceDisconnected] Device status updated: {address} -> offline")
        self._emit_socket_event(user_email, hub_address, address)

        if in_cooldown:
            logger.info(f"[deviceDisconnected] Inside cooldown, push suppressed: {address}")
            metrics.record_notification(DisconnectOutcome.SUPPRESSED)
            return DisconnectOutcome.SUPPRESSED

        if token is None:
            logger.warning(f"[deviceDisconnected] No push token for {user_email}")
            metrics.record_notification(DisconnectOutcome.NO_TOKEN)
            return DisconnectOutcome.NO_TOKEN

        outcome = self._send_push(token, user_email, address, device_name)
        metrics.record_notification(outcome)
        return outcome

    def _emit_socket_event(self, user_email: str, hub_address: Optional[str], address: str) -> None:
        if self.broadcaster is None:
            return
        payload = {"hubId": hub_address, "deviceMac": address}
        try:
            for event in DISCONNECT_EVENTS:
                self.broadcaster.broadcast_to_user(user_email, event, payload)
        except Exception as e:
            logger.warning(f"[deviceDisconnected] Socket broadcast failed for {address}: {e}")

    def _send_push(self, token: str, user_email: str, address: str, device_name: str) -> str:
        result = self.push.send(
            token,
            title="Device disconnected",
            body=f"{device_name} has disconnected.",
            data={"type": "DEVICE_DISCONNECTED", "deviceId": str(address)},
        )
        if result.success:
            logger.info(f"[deviceDisconnected] Push sent: {device_name} -> {user_email}")
            return DisconnectOutcome.SENT

        failure = result.to_failure()
        if failure.invalid_token:
            self._clear_token(user_email)
            logger.warning(f"[deviceDisconnected] Invalid token removed for {user_email} ({failure.error_code})")
            return DisconnectOutcome.TOKEN_CLEARED

        logger.warning(f"[deviceDisconnected] Push failed for {user_email}: {failure}")
        return DisconnectOutcome.FAILED

    def _clear_token(self, user_email: str) -> None:
        with session_scope(self.session_factory) as session:
            session.query(User).filter(User.email == user_email).update({User.fcm_token: None})


# Global instance
device_disconnect_service = DeviceDisconnectService()
