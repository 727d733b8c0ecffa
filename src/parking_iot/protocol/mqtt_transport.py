"""
MQTT transport built on paho-mqtt.

paho runs its network loop on a background thread; every inbound message
is handed over to the asyncio event loop with call_soon_threadsafe so that
subscribers only ever run on the loop that owns the canonical state.
QoS 0 is used throughout: commands are delivered at most once.
"""

import asyncio
import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from ..config import MQTTConfig
from ..errors import TransportError
from .transport import MessageHandler, Transport, topic_matches

logger = logging.getLogger(__name__)


class MQTTTransport(Transport):
    """Transport backed by an external MQTT broker."""

    def __init__(self, config: MQTTConfig, client_id: Optional[str] = None):
        """
        Initialize the MQTT transport.

        Args:
            config: Broker connection settings
            client_id: Overrides config.client_id (gateways need unique ids)
        """
        self.config = config
        self.client_id = client_id or config.client_id
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.reconnect_delay_set(min_delay=1, max_delay=10)

        self._subscriptions: list[tuple[str, MessageHandler]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def start(self) -> None:
        """Connect asynchronously and start the paho network thread."""
        self._loop = asyncio.get_running_loop()
        logger.info(f"Connecting to MQTT broker {self.config.host}:{self.config.port} as {self.client_id}")
        try:
            self.client.connect_async(
                self.config.host,
                self.config.port,
                keepalive=self.config.keepalive,
            )
            self.client.loop_start()
        except OSError as e:
            raise TransportError(f"MQTT connection failed: {e}") from e

    async def stop(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()
        self._connected.clear()
        logger.info("MQTT transport stopped")

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        self._subscriptions.append((topic_filter, handler))
        if self.connected:
            self.client.subscribe(topic_filter, qos=0)

    def publish(self, topic: str, payload: bytes) -> None:
        if not self.connected:
            raise TransportError(f"MQTT not connected, cannot publish to {topic}")

        result = self.client.publish(topic, payload, qos=0)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(
                f"Failed to publish to {topic}: {mqtt.error_string(result.rc)}"
            )

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            return

        logger.info(f"Connected to MQTT broker {self.config.host}:{self.config.port}")
        # Subscriptions do not survive a clean session reconnect
        for topic_filter in {f for f, _ in self._subscriptions}:
            client.subscribe(topic_filter, qos=0)
            logger.info(f"Subscribed to {topic_filter}")
        self._connected.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._connected.clear()
        logger.warning(f"MQTT disconnected: {reason_code}")

    def _on_message(self, client, userdata, msg) -> None:
        if self._loop is None:
            logger.warning(f"Message on {msg.topic} before transport start, dropped")
            return

        for topic_filter, handler in list(self._subscriptions):
            if topic_matches(topic_filter, msg.topic):
                self._loop.call_soon_threadsafe(self._deliver, handler, msg.topic, bytes(msg.payload))

    def _deliver(self, handler: MessageHandler, topic: str, payload: bytes) -> None:
        try:
            handler(topic, payload)
        except Exception as e:
            logger.exception(f"Handler for {topic} failed: {e}")
