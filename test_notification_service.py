"""Tests for the FCM push service."""
import requests

from notification_service import (
    PushNotificationService,
    PushResult,
    _extract_error_code,
    is_invalid_token_error,
)


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def make_service(session, enabled=True):
    return PushNotificationService(
        enabled=enabled,
        project_id="demo-project",
        access_token="access-token",
        timeout=3,
        session=session,
    )


def test_send_success():
    session = FakeSession(FakeResponse(200, {"name": "projects/demo-project/messages/42"}))
    service = make_service(session)

    result = service.send(" device-token ", "Device disconnected", "Collar has disconnected.",
                          {"type": "DEVICE_DISCONNECTED", "deviceId": "AA:BB", "count": 3})

    assert result == PushResult(success=True, message_id="projects/demo-project/messages/42")
    request = session.requests[0]
    assert request["url"] == "https://fcm.googleapis.com/v1/projects/demo-project/messages:send"
    assert request["headers"]["Authorization"] == "Bearer access-token"
    assert request["timeout"] == 3
    message = request["json"]["message"]
    assert message["token"] == "device-token"
    assert message["notification"] == {"title": "Device disconnected", "body": "Collar has disconnected."}
    assert message["data"] == {"type": "DEVICE_DISCONNECTED", "deviceId": "AA:BB", "count": "3"}
    assert message["android"]["priority"] == "high"


def test_default_title():
    service = make_service(FakeSession())
    message = service.build_message("tok", "", "body", {})
    assert message["message"]["notification"]["title"] == "TalkTail"


def test_disabled_service_does_not_call_provider():
    session = FakeSession(FakeResponse(200, {}))
    service = make_service(session, enabled=False)

    result = service.send("tok", "t", "b")
    assert result.success is False
    assert result.error_code == "fcm-not-available"
    assert session.requests == []


def test_empty_token_is_rejected():
    session = FakeSession(FakeResponse(200, {}))
    result = make_service(session).send("  ", "t", "b")
    assert result.error_code == "empty-token"
    assert not result.invalid_token
    assert session.requests == []


def test_unregistered_token():
    body = {"error": {
        "code": 404,
        "status": "NOT_FOUND",
        "details": [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError", "errorCode": "UNREGISTERED"}],
    }}
    result = make_service(FakeSession(FakeResponse(404, body))).send("tok", "t", "b")

    assert result.success is False
    assert result.error_code == "UNREGISTERED"
    assert result.invalid_token
    failure = result.to_failure()
    assert failure.invalid_token
    assert failure.error_code == "UNREGISTERED"


def test_invalid_argument_from_status():
    body = {"error": {"code": 400, "status": "INVALID_ARGUMENT"}}
    result = make_service(FakeSession(FakeResponse(400, body))).send("tok", "t", "b")
    assert result.error_code == "INVALID_ARGUMENT"
    assert result.invalid_token


def test_server_error_is_transient():
    result = make_service(FakeSession(FakeResponse(503))).send("tok", "t", "b")
    assert result.error_code == "HTTP 503"
    assert not result.invalid_token


def test_transport_error_is_transient():
    session = FakeSession(error=requests.ConnectionError("connection refused"))
    result = make_service(session).send("tok", "t", "b")
    assert result.success is False
    assert result.error_code.startswith("transport:")
    assert not result.invalid_token


def test_invalid_token_codes():
    assert is_invalid_token_error("messaging/registration-token-not-registered")
    assert is_invalid_token_error("messaging/invalid-registration-token")
    assert is_invalid_token_error("UNREGISTERED")
    assert not is_invalid_token_error("QUOTA_EXCEEDED")
    assert not is_invalid_token_error(None)


def test_extract_error_code_without_error_object():
    assert _extract_error_code(FakeResponse(500, {"unexpected": True})) == "HTTP 500"
    assert _extract_error_code(FakeResponse(500, ["not", "a", "dict"])) == "HTTP 500"


def test_successful_result_has_no_failure():
    assert PushResult(success=True).to_failure() is None
