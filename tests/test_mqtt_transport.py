import asyncio
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from parking_iot.config import MQTTConfig
from parking_iot.errors import TransportError
from parking_iot.protocol.mqtt_transport import MQTTTransport


class _DummyMQTTClient:
    def __init__(self, *args, **kwargs) -> None:
        self.client_id = kwargs.get("client_id")
        self.credentials = None
        self.connect_args = None
        self.loop_running = False
        self.subscribed: list[str] = []
        self.published: list[tuple[str, bytes]] = []
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS

    def username_pw_set(self, username, password=None) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay=1, max_delay=120) -> None:
        pass

    def connect_async(self, host, port=1883, keepalive=60) -> None:
        self.connect_args = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        pass

    def subscribe(self, topic, qos=0) -> None:
        self.subscribed.append(topic)

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload))
        return SimpleNamespace(rc=self.publish_rc)


def _connected(transport: MQTTTransport) -> None:
    transport._on_connect(transport.client, None, None, SimpleNamespace(is_failure=False), None)


@pytest.fixture
def transport(monkeypatch):
    monkeypatch.setattr(mqtt, "Client", _DummyMQTTClient)
    config = MQTTConfig(transport="mqtt", host="broker.local", username="parking", password="secret")
    return MQTTTransport(config, client_id="gateway_gateway_001")


def test_client_configuration(transport):
    assert transport.client.client_id == "gateway_gateway_001"
    assert transport.client.credentials == ("parking", "secret")
    assert not transport.connected


def test_publish_requires_connection(transport):
    with pytest.raises(TransportError):
        transport.publish("/gateway_001/up_link", b"{}")


def test_subscriptions_are_replayed_on_connect(transport):
    transport.subscribe("/+/up_link", lambda topic, payload: None)
    assert transport.client.subscribed == []

    _connected(transport)

    assert transport.connected
    assert transport.client.subscribed == ["/+/up_link"]

    transport.subscribe("/+/heartbeat", lambda topic, payload: None)
    assert transport.client.subscribed == ["/+/up_link", "/+/heartbeat"]


def test_failed_connect_stays_disconnected(transport):
    transport._on_connect(transport.client, None, None, SimpleNamespace(is_failure=True), None)

    assert not transport.connected


def test_publish_and_failure(transport):
    _connected(transport)

    transport.publish("/gateway_001/up_link", b"{}")
    assert transport.client.published == [("/gateway_001/up_link", b"{}")]

    transport.client.publish_rc = mqtt.MQTT_ERR_NO_CONN
    with pytest.raises(TransportError):
        transport.publish("/gateway_001/up_link", b"{}")

    transport._on_disconnect(transport.client, None, None, "lost", None)
    assert not transport.connected


def test_inbound_messages_run_on_the_loop(transport):
    async def scenario():
        await transport.start()
        assert transport.client.connect_args == ("broker.local", 1883, 60)
        assert transport.client.loop_running

        received = []
        transport.subscribe("/+/down_link_ack", lambda topic, payload: received.append((topic, payload)))
        transport._on_message(
            transport.client, None, SimpleNamespace(topic="/gateway_001/down_link_ack", payload=bytearray(b"{}"))
        )
        transport._on_message(transport.client, None, SimpleNamespace(topic="/gateway_001/up_link", payload=b"{}"))
        assert received == []

        await asyncio.sleep(0)
        await transport.stop()
        return received

    received = asyncio.run(scenario())

    assert received == [("/gateway_001/down_link_ack", b"{}")]
