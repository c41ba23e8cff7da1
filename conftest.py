"""Shared pytest fixtures for the hub ingestion tests."""
import os
import tempfile
from datetime import datetime, timedelta

# Settings are read at import time; keep tests off the real database and broker
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CSV_BASE_DIR", tempfile.mkdtemp(prefix="hub-ingest-csv-"))
os.environ.setdefault("FCM_ENABLED", "false")
os.environ.setdefault("MQTT_BROKER_HOST", "127.0.0.1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from csv_writer import DailyCsvWriter
from database import Base
from error_handler import dead_letter_queue
from metrics import metrics
from models import Device, DeviceStatus, Hub, User
from notification_service import PushResult


class FakePush:
    """Push provider double; returns queued results, success by default."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def send(self, token, title, body, data=None):
        self.calls.append({"token": token, "title": title, "body": body, "data": data})
        if self.results:
            return self.results.pop(0)
        return PushResult(success=True, message_id="projects/demo/messages/1")


class FakeBroadcaster:
    def __init__(self, fail=False):
        self.fail = fail
        self.user_events = []
        self.device_events = []

    def broadcast_to_user(self, email, event, payload):
        if self.fail:
            raise RuntimeError("socket layer down")
        self.user_events.append((email, event, payload))
        return True

    def broadcast_to_device(self, address, event, payload):
        if self.fail:
            raise RuntimeError("socket layer down")
        self.device_events.append((address, event, payload))
        return True


class FakePublisher:
    def __init__(self, result=True):
        self.result = result
        self.published = []

    def __call__(self, topic, payload):
        self.published.append((topic, payload))
        return self.result


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_pipeline_state():
    metrics.reset()
    dead_letter_queue.clear()
    yield


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def csv_dir(tmp_path):
    return tmp_path / "csv"


@pytest.fixture
def csv_writer(csv_dir):
    return DailyCsvWriter(str(csv_dir))


@pytest.fixture
def fake_push():
    return FakePush()


@pytest.fixture
def fake_broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def fake_publisher():
    return FakePublisher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def owner_with_device(session_factory):
    """A user with a push token and one online collar paired through a hub."""
    session = session_factory()
    session.add(User(email="owner@example.com", name="Owner", fcm_token="token-123"))
    session.add(Hub(address="hub-1", name="Living room", user_email="owner@example.com"))
    session.add(Device(
        address="AA:BB:CC:DD:EE:FF",
        name="Collar",
        hub_address="hub-1",
        user_email="owner@example.com",
        status=DeviceStatus.ONLINE,
    ))
    session.commit()
    session.close()
    return "AA:BB:CC:DD:EE:FF"


def read_lines(path):
    with open(path, encoding="utf-8") as fh:
        return fh.read().splitlines()
