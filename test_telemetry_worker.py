"""Tests for the telemetry broadcast worker."""
import time

from conftest import FakeBroadcaster
from telemetry_worker import TelemetryBroadcastWorker


class TickClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_worker(broadcaster, clock=None, **kwargs):
    kwargs.setdefault("max_samples_per_device", 10)
    kwargs.setdefault("recent_limit", 50)
    kwargs.setdefault("broadcast_interval", 1.0)
    kwargs.setdefault("min_broadcast_interval", 0.5)
    return TelemetryBroadcastWorker(broadcaster=broadcaster, clock=clock or TickClock(), **kwargs)


def test_flush_batches_samples_per_device():
    broadcaster = FakeBroadcaster()
    worker = make_worker(broadcaster)
    worker.enqueue("AA:BB", {"hr": 70}, "2024-05-01 10:00:00")
    worker.enqueue("aa:bb", {"hr": 71}, "2024-05-01 10:00:01")
    worker.enqueue("hub-1", {"envTemp": 25.0})

    assert worker.pending_count() == 3
    assert worker.flush() == 2
    assert worker.pending_count() == 0

    by_device = {address: payload for address, event, payload in broadcaster.device_events}
    assert set(by_device) == {"aa:bb", "hub-1"}
    assert by_device["aa:bb"]["count"] == 2
    assert [s["data"]["hr"] for s in by_device["aa:bb"]["samples"]] == [70, 71]
    assert all(event == "telemetry" for _, event, _ in broadcaster.device_events)

    assert worker.flush() == 0


def test_min_broadcast_interval_per_device():
    broadcaster = FakeBroadcaster()
    clock = TickClock()
    worker = make_worker(broadcaster, clock=clock)

    worker.enqueue("aa:bb", {"hr": 70})
    assert worker.flush() == 1

    worker.enqueue("aa:bb", {"hr": 71})
    clock.now += 0.2
    assert worker.flush() == 0
    assert worker.pending_count() == 1

    clock.now += 0.4
    assert worker.flush() == 1
    assert len(broadcaster.device_events) == 2


def test_pending_queue_is_bounded():
    broadcaster = FakeBroadcaster()
    worker = make_worker(broadcaster, max_samples_per_device=3)
    for i in range(5):
        worker.enqueue("aa:bb", {"seq": i})

    assert worker.pending_count() == 3
    assert worker.samples_overflowed == 2
    assert worker.samples_received == 5

    worker.flush()
    samples = broadcaster.device_events[0][2]["samples"]
    assert [s["data"]["seq"] for s in samples] == [2, 3, 4]


def test_recent_and_latest_reads():
    worker = make_worker(FakeBroadcaster(), recent_limit=4)
    for i in range(6):
        worker.enqueue("AA:BB", {"seq": i}, f"t{i}")
    worker.enqueue("cc:dd", {"seq": 99})

    recent = worker.get_recent_data("aa:bb", limit=10)
    assert [s["data"]["seq"] for s in recent] == [2, 3, 4, 5]
    assert [s["data"]["seq"] for s in worker.get_recent_data("AA:BB", limit=2)] == [4, 5]
    assert worker.get_recent_data("ee:ff") == []

    all_recent = worker.get_all_recent_data(limit=1)
    assert {k: [s["data"]["seq"] for s in v] for k, v in all_recent.items()} == {"aa:bb": [5], "cc:dd": [99]}

    assert worker.get_latest_telemetry("Aa:Bb")["timestamp"] == "t5"
    assert worker.get_latest_telemetry("unknown") is None
    assert set(worker.get_latest_telemetry()) == {"aa:bb", "cc:dd"}


def test_broadcast_failure_is_contained():
    worker = make_worker(FakeBroadcaster(fail=True))
    worker.enqueue("aa:bb", {"hr": 70})
    assert worker.flush() == 1
    assert worker.pending_count() == 0


def test_enqueue_without_device_is_ignored():
    worker = make_worker(FakeBroadcaster())
    worker.enqueue("", {"hr": 70})
    assert worker.samples_received == 0


def test_background_thread_flushes():
    broadcaster = FakeBroadcaster()
    worker = TelemetryBroadcastWorker(
        broadcaster=broadcaster,
        broadcast_interval=0.01,
        min_broadcast_interval=0,
    )
    worker.start()
    try:
        assert worker.is_running
        worker.enqueue("aa:bb", {"hr": 70})
        deadline = time.monotonic() + 2.0
        while not broadcaster.device_events and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        worker.stop()

    assert not worker.is_running
    assert broadcaster.device_events[0][0] == "aa:bb"


def test_idle_devices_are_evicted_on_flush():
    broadcaster = FakeBroadcaster()
    clock = TickClock()
    worker = make_worker(broadcaster, clock=clock, idle_eviction_seconds=60)

    worker.enqueue("dev-old", {"hr": 70})
    clock.now += 30
    worker.enqueue("dev-new", {"hr": 71})
    assert worker.flush() == 2
    assert worker.device_count() == 2

    clock.now += 45
    worker.flush()
    assert worker.device_count() == 1
    assert worker.get_latest_telemetry("dev-old") is None
    assert worker.get_recent_data("dev-old") == []
    assert worker.get_latest_telemetry("dev-new") is not None


def test_device_with_pending_samples_is_not_evicted():
    clock = TickClock()
    worker = make_worker(FakeBroadcaster(), clock=clock, idle_eviction_seconds=10, min_broadcast_interval=100)

    worker.enqueue("dev-1", {"hr": 70})
    assert worker.flush() == 1
    worker.enqueue("dev-1", {"hr": 71})
    clock.now += 20
    assert worker.flush() == 0
    assert worker.pending_count() == 1
    assert worker.device_count() == 1
