#!/usr/bin/env python3
"""
Hub MQTT simulator.

- Publishes the payload shapes a BLE health hub sends on hub/{id}/send and
  hub/{id}/data: telemetry batches, inline samples, legacy per-device rows,
  pending-device reports and (optionally) disconnect and delete signals.
- Prints whatever the gateway republishes on hub/{id}/receive.
"""

import json
import os
import random
import time
from datetime import datetime

import paho.mqtt.client as mqtt


# ---------------------------------------------------------------------------
# Configuration (can be overridden via environment variables)
# ---------------------------------------------------------------------------
HUB_ID = os.environ.get("HUB_ID", "HUB-0001")
DEVICE_MACS = os.environ.get(
    "DEVICE_MACS", "AA:BB:CC:DD:EE:01,AA:BB:CC:DD:EE:02"
).split(",")

MQTT_HOST = os.environ.get("MQTT_HOST", "localhost")
MQTT_PORT = int(os.environ.get("MQTT_PORT", "1883"))
MQTT_QOS = int(os.environ.get("MQTT_QOS", "1"))

SEND_TOPIC = f"hub/{HUB_ID}/send"
DATA_TOPIC = f"hub/{HUB_ID}/data"
RECEIVE_TOPIC = f"hub/{HUB_ID}/receive"

SEND_INTERVAL_SECONDS = int(os.environ.get("SEND_INTERVAL_SECONDS", "5"))
# Send a disconnect for the first device every N cycles (0 disables)
DISCONNECT_EVERY = int(os.environ.get("DISCONNECT_EVERY", "0"))
# Send a delete for the last device every N cycles (0 disables)
DELETE_EVERY = int(os.environ.get("DELETE_EVERY", "0"))


def build_telemetry_batch(rows: int = 5) -> dict:
    """Telemetry batch: each row's 'd' is envTemp, heartRate, respRate, bodyTemp, activity."""
    now = datetime.now()
    data = []
    for _ in range(rows):
        data.append({
            "t": now.strftime("%Y-%m-%d %H:%M:%S"),
            "d": "{:.2f},{},{},{:.2f},{}".format(
                random.uniform(22.0, 27.0),
                random.randint(60, 110),
                random.randint(12, 24),
                random.uniform(36.0, 38.5),
                random.randint(0, 5),
            ),
        })
    return {"data": data}


def build_inline_sample(mac: str) -> str:
    """Inline BLE sample: '{mac}-{samplingRate},{hr},{spo2},{temp},{battery}'."""
    return "{}-{},{},{},{},{}".format(
        mac,
        50,
        random.randint(60, 110),
        random.randint(94, 100),
        round(random.uniform(36.0, 38.5), 1),
        random.randint(20, 100),
    )


def build_legacy_sample(mac: str) -> dict:
    return {
        "d": f"{mac}-" + ",".join(str(random.randint(0, 100)) for _ in range(6)),
        "t": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    }


def build_pending_report() -> dict:
    devices = []
    for mac in DEVICE_MACS:
        devices.append({
            "mac_address": mac,
            "data_count": random.randint(0, 500),
            "first_time": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        })
    return {"pending_devices": devices}


def on_connect(client, userdata, flags, rc, properties=None):
    if rc == 0:
        print(f"[MQTT] Connected to {MQTT_HOST}:{MQTT_PORT}")
        client.subscribe(RECEIVE_TOPIC, qos=MQTT_QOS)
    else:
        print(f"[MQTT] Failed to connect, rc={rc}")


def on_message(client, userdata, msg):
    print(f"[{msg.topic}] {msg.payload.decode('utf-8', errors='replace')}")


def publish(client, topic, payload):
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    result = client.publish(topic, payload, qos=MQTT_QOS)
    status = result[0]
    if status == mqtt.MQTT_ERR_SUCCESS:
        print(f"-> {topic}: {payload[:100]}")
    else:
        print(f"Failed to publish to {topic}, status={status}")


def main():
    print(f"Hub simulator starting for hub: {HUB_ID}")
    print(f"Broker: {MQTT_HOST}:{MQTT_PORT}")
    print(f"Devices: {', '.join(DEVICE_MACS)}")
    print(f"Interval: {SEND_INTERVAL_SECONDS} seconds\n")

    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"hub-sim-{HUB_ID}",
    )
    client.on_connect = on_connect
    client.on_message = on_message

    client.connect(MQTT_HOST, MQTT_PORT, keepalive=60)
    client.loop_start()

    cycle = 0
    try:
        while True:
            cycle += 1
            publish(client, SEND_TOPIC, build_telemetry_batch())
            for mac in DEVICE_MACS:
                publish(client, SEND_TOPIC, build_inline_sample(mac))
                publish(client, DATA_TOPIC, build_legacy_sample(mac))
            publish(client, SEND_TOPIC, build_pending_report())

            if DISCONNECT_EVERY and cycle % DISCONNECT_EVERY == 0:
                publish(client, SEND_TOPIC, f"disconnected:{DEVICE_MACS[0]}")
            if DELETE_EVERY and cycle % DELETE_EVERY == 0:
                publish(client, SEND_TOPIC, f"delete:{DEVICE_MACS[-1]}")

            time.sleep(SEND_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        print("\nStopping hub simulator...")
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
