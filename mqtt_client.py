"""MQTT client for hub telemetry, pending-device reports and disconnect signals."""
import json
import logging
from typing import Any, Dict, Optional, Union
import paho.mqtt.client as mqtt
from config import settings
from message_dispatcher import SUBSCRIPTIONS, hub_receive_topic

logger = logging.getLogger(__name__)


class HubMQTTHandler:
    """MQTT client that feeds hub messages to the dispatcher and publishes replies."""

    def __init__(self, dispatcher=None, client_id: Optional[str] = None):
        """Initialize MQTT client."""
        self.dispatcher = dispatcher
        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or settings.mqtt_client_id,
            clean_session=True,
        )

        # Set credentials if provided
        if settings.mqtt_broker_username and settings.mqtt_broker_password:
            self.client.username_pw_set(
                settings.mqtt_broker_username,
                settings.mqtt_broker_password
            )

        # Broker reconnects are handled by paho's network loop
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

        # Set callbacks
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

        self.is_connected = False

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        """Callback when MQTT client connects; (re)subscribes every time."""
        if rc == 0:
            self.is_connected = True
            logger.info(f"Connected to MQTT broker at {settings.mqtt_broker_host}:{settings.mqtt_broker_port}")
            for topic in SUBSCRIPTIONS:
                client.subscribe(topic, qos=settings.mqtt_subscribe_qos)
            logger.info(f"Subscribed to MQTT topics: {', '.join(SUBSCRIPTIONS)}")
        else:
            logger.error(f"Failed to connect to MQTT broker. Return code: {rc}")
            self.is_connected = False

    def _on_message(self, client, userdata, msg):
        """Callback when MQTT message is received. Must return immediately."""
        if self.dispatcher is None:
            logger.warning(f"No dispatcher attached, dropping message on {msg.topic}")
            return
        try:
            self.dispatcher.submit(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"Error queueing MQTT message on {msg.topic}: {e}", exc_info=True)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        """Callback when MQTT client disconnects."""
        self.is_connected = False
        if rc != 0:
            logger.warning(f"Unexpected MQTT disconnection. Return code: {rc}")
        else:
            logger.info("Disconnected from MQTT broker")

    def publish(self, topic: str, payload: Union[str, bytes, Dict[str, Any]], qos: Optional[int] = None) -> bool:
        """Publish a message.

        Args:
            topic: MQTT topic
            payload: dicts are JSON-encoded, strings and bytes are sent as-is
            qos: Quality of Service level (default from settings)

        Returns:
            True if the client is connected and paho accepted the message.
        """
        if not self.is_connected:
            logger.warning(f"MQTT client not connected, cannot publish to {topic}")
            return False

        data = json.dumps(payload) if isinstance(payload, dict) else payload
        try:
            result = self.client.publish(
                topic,
                data,
                qos=settings.mqtt_publish_qos if qos is None else qos,
                retain=False,
            )
        except Exception as e:
            logger.error(f"Error publishing to {topic}: {e}", exc_info=True)
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"Published to {topic}")
            return True
        logger.error(f"Failed to publish to {topic}: {result.rc}")
        return False

    def send_command(self, hub_id: str, command: Union[str, Dict[str, Any]]) -> bool:
        """Publish a command to a hub's receive topic without waiting for a reply.

        ``{"raw_command": "..."}`` is sent verbatim; other dicts as JSON.
        """
        if isinstance(command, dict) and command.get("raw_command") is not None:
            payload = str(command["raw_command"])
        elif isinstance(command, dict):
            payload = json.dumps(command)
        else:
            payload = str(command)
        return self.publish(hub_receive_topic(hub_id), payload)

    def connect(self):
        """Connect to MQTT broker and start the network loop."""
        try:
            logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker_host}:{settings.mqtt_broker_port}")
            self.client.connect_async(
                settings.mqtt_broker_host,
                settings.mqtt_broker_port,
                keepalive=settings.mqtt_keepalive,
            )
            self.client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            raise

    def disconnect(self):
        """Disconnect from MQTT broker."""
        self.client.loop_stop()
        if self.is_connected:
            self.client.disconnect()
            self.is_connected = False
        logger.info("Disconnected from MQTT broker")


# Global MQTT handler instance; the dispatcher is attached at startup
mqtt_handler = HubMQTTHandler()
