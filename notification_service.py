"""Push notification delivery through Firebase Cloud Messaging (HTTP v1)."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from config import settings
from error_handler import NotificationProviderFailure

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

# Provider codes meaning the registration token will never work again
INVALID_TOKEN_CODES = (
    "UNREGISTERED",
    "INVALID_ARGUMENT",
    "messaging/invalid-registration-token",
    "messaging/registration-token-not-registered",
    "messaging/invalid-argument",
)


@dataclass
class PushResult:
    """Outcome of one push attempt."""

    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def invalid_token(self) -> bool:
        return is_invalid_token_error(self.error_code)

    def to_failure(self) -> Optional[NotificationProviderFailure]:
        if self.success:
            return None
        return NotificationProviderFailure(self.error_code, invalid_token=self.invalid_token)


def is_invalid_token_error(error_code: Optional[str]) -> bool:
    if not error_code:
        return False
    return any(code in error_code for code in INVALID_TOKEN_CODES)


def _extract_error_code(response: requests.Response) -> str:
    """Pull the most specific error code out of an FCM error body."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return f"HTTP {response.status_code}"
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return str(detail["errorCode"])
    return str(error.get("status") or f"HTTP {response.status_code}")


class PushNotificationService:
    """Sends push notifications to a single registration token."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        project_id: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize push service from explicit arguments or settings."""
        self.enabled = settings.fcm_enabled if enabled is None else enabled
        self.project_id = project_id or settings.fcm_project_id
        self.access_token = access_token or settings.fcm_access_token
        self.timeout = timeout or settings.fcm_timeout_seconds
        self.session = session or requests.Session()

        if not self.is_available():
            logger.info("FCM push disabled (set FCM_ENABLED, FCM_PROJECT_ID and FCM_ACCESS_TOKEN to enable)")

    def is_available(self) -> bool:
        return bool(self.enabled and self.project_id and self.access_token)

    def build_message(self, token: str, title: str, body: str, data: Dict[str, Any]) -> Dict[str, Any]:
        # FCM requires every data value to be a string
        data_str = {k: v if isinstance(v, str) else str(v) for k, v in (data or {}).items()}
        return {
            "message": {
                "token": token,
                "notification": {"title": title or settings.push_default_title, "body": body or ""},
                "data": data_str,
                "android": {
                    "priority": "high",
                    "notification": {"sound": "default", "channel_id": "background"},
                },
                "apns": {
                    "headers": {"apns-priority": "10"},
                    "payload": {"aps": {"sound": "default", "content-available": 1}},
                },
            }
        }

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> PushResult:
        """
        Send one notification.

        Args:
            token: FCM registration token
            title: Notification title
            body: Notification body
            data: Structured data payload delivered alongside the notification

        Returns:
            PushResult; never raises.
        """
        if not token or not isinstance(token, str) or not token.strip():
            return PushResult(success=False, error_code="empty-token")
        if not self.is_available():
            logger.warning(f"FCM not available, skip push: {title}")
            return PushResult(success=False, error_code="fcm-not-available")

        url = FCM_SEND_URL.format(project_id=self.project_id)
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        payload = self.build_message(token.strip(), title, body, data or {})

        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Push request failed: {e}")
            return PushResult(success=False, error_code=f"transport: {e}")

        if 200 <= response.status_code < 300:
            try:
                message_id = response.json().get("name")
            except ValueError:
                message_id = None
            logger.info(f"Push sent: {title} -> {message_id}")
            return PushResult(success=True, message_id=message_id)

        error_code = _extract_error_code(response)
        logger.error(f"Push send error: {error_code} ({title})")
        return PushResult(success=False, error_code=error_code)


# Global push service instance
push_service = PushNotificationService()
