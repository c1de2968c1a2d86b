"""Tests for broker URL parsing and PahoBrokerClient with a mocked paho client."""
from __future__ import annotations

from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from serialbridge.broker_client import (
    BrokerAddress,
    BrokerAuthError,
    BrokerError,
    PahoBrokerClient,
    parse_broker_url,
)


class TestParseBrokerUrl:
    def test_plain(self):
        assert parse_broker_url("mqtt://broker.local") == BrokerAddress("broker.local", 1883)

    def test_explicit_port(self):
        assert parse_broker_url("tcp://10.0.0.1:1884").port == 1884

    @pytest.mark.parametrize("scheme", ["mqtts", "ssl", "tls"])
    def test_tls_schemes(self, scheme):
        address = parse_broker_url(f"{scheme}://broker")
        assert address.tls
        assert address.port == 8883
        assert address.transport == "tcp"

    def test_websockets(self):
        address = parse_broker_url("wss://broker/mqtt")
        assert address == BrokerAddress("broker", 443, transport="websockets", tls=True, path="/mqtt")

    def test_unsupported_scheme(self):
        with pytest.raises(BrokerError):
            parse_broker_url("http://broker")

    def test_missing_host(self):
        with pytest.raises(BrokerError):
            parse_broker_url("mqtt://")


def _make_client(on_message=None, **kwargs) -> tuple[PahoBrokerClient, MagicMock]:
    client = PahoBrokerClient("mqtt://localhost", "sertomqtt_test", on_message=on_message,
                              connect_timeout=1, ack_timeout=1, **kwargs)
    mock_paho = MagicMock()
    client._client = mock_paho
    return client, mock_paho


def _connack(name: str) -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, name)


class TestConnect:
    def test_accepted(self):
        client, mock_paho = _make_client()
        mock_paho.loop_start.side_effect = lambda: client._on_connect(None, None, None, _connack("Success"))

        client.connect()

        mock_paho.connect.assert_called_once_with("localhost", 1883, keepalive=60)
        assert client.wait_closed(timeout=0) is False

    def test_bad_credentials(self):
        client, mock_paho = _make_client()
        mock_paho.loop_start.side_effect = lambda: client._on_connect(None, None, None, _connack("Not authorized"))

        with pytest.raises(BrokerAuthError):
            client.connect()

    def test_refused(self):
        client, mock_paho = _make_client()
        mock_paho.loop_start.side_effect = lambda: client._on_connect(None, None, None, _connack("Server unavailable"))

        with pytest.raises(BrokerError) as exc_info:
            client.connect()
        assert not isinstance(exc_info.value, BrokerAuthError)

    def test_socket_error(self):
        client, mock_paho = _make_client()
        mock_paho.connect.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(BrokerError):
            client.connect()

    def test_timeout(self):
        client, _ = _make_client()
        client._connect_timeout = 0.01

        with pytest.raises(BrokerError, match="Timed out"):
            client.connect()


class TestLifecycle:
    def test_drop_ends_wait(self):
        client, _ = _make_client()
        client._on_connect(None, None, None, _connack("Success"))

        assert client.wait_closed(timeout=0) is False
        client._on_disconnect(None, None, None, ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection"), None)

        assert client.wait_closed(timeout=0) is True

    def test_close(self):
        client, mock_paho = _make_client()
        client.close()
        mock_paho.disconnect.assert_called_once()
        mock_paho.loop_stop.assert_called_once()
        assert client.wait_closed(timeout=0)


class TestSubscribe:
    def test_waits_for_suback(self):
        client, mock_paho = _make_client()

        def subscribe(topic, qos=0):
            client._on_subscribe(None, None, 7, [ReasonCode(PacketTypes.SUBACK, "Granted QoS 0")], None)
            return mqtt.MQTT_ERR_SUCCESS, 7

        mock_paho.subscribe.side_effect = subscribe

        client.subscribe("node1/dev1/tx", "dev1")

        assert client._subscriptions == {"dev1": "node1/dev1/tx"}

    def test_rejected(self):
        client, mock_paho = _make_client()

        def subscribe(topic, qos=0):
            client._on_subscribe(None, None, 3, [ReasonCode(PacketTypes.SUBACK, "Not authorized")], None)
            return mqtt.MQTT_ERR_SUCCESS, 3

        mock_paho.subscribe.side_effect = subscribe

        with pytest.raises(BrokerError, match="rejected"):
            client.subscribe("node1/dev1/tx", "dev1")
        assert client._subscriptions == {}

    def test_closed_while_waiting(self):
        client, mock_paho = _make_client()

        def subscribe(topic, qos=0):
            client._closed.set()
            return mqtt.MQTT_ERR_SUCCESS, 1

        mock_paho.subscribe.side_effect = subscribe

        with pytest.raises(BrokerError, match="Connection closed"):
            client.subscribe("node1/dev1/tx", "dev1")
        assert client._subscriptions == {}

    def test_unsubscribe(self):
        client, mock_paho = _make_client()
        client._subscriptions["dev1"] = "node1/dev1/tx"
        mock_paho.unsubscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 2)

        client.unsubscribe("dev1")
        client.unsubscribe("dev1")

        mock_paho.unsubscribe.assert_called_once_with("node1/dev1/tx")
        assert client._subscriptions == {}


class TestPublish:
    def test_publish(self):
        client, mock_paho = _make_client()
        mock_paho.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)

        client.publish("node1/dev1/rx", '"hi"', qos=1)

        mock_paho.publish.assert_called_once_with("node1/dev1/rx", '"hi"', qos=1, retain=False)

    def test_publish_failure(self):
        client, mock_paho = _make_client()
        mock_paho.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)

        with pytest.raises(BrokerError):
            client.publish("node1/dev1/rx", '"hi"')


class TestMessageRouting:
    def test_routes_by_subscription(self):
        received = []
        client, _ = _make_client(on_message=lambda *args: received.append(args))
        client._subscriptions = {"dev1": "node1/dev1/tx", "dev2": "node1/dev2/tx"}

        client._on_message(None, None, MagicMock(topic="node1/dev2/tx", payload=b'"x"'))

        assert received == [(b'"x"', "dev2", "node1/dev2/tx")]

    def test_unmatched_ignored(self):
        received = []
        client, _ = _make_client(on_message=lambda *args: received.append(args))
        client._subscriptions = {"dev1": "node1/dev1/tx"}

        client._on_message(None, None, MagicMock(topic="node1/other/tx", payload=b'"x"'))

        assert received == []

    def test_handler_error_logged(self):
        def boom(*args):
            raise RuntimeError("boom")

        client, _ = _make_client(on_message=boom)
        client._subscriptions = {"dev1": "node1/dev1/tx"}

        client._on_message(None, None, MagicMock(topic="node1/dev1/tx", payload=b"1"))
