"""MQTT broker client abstraction."""
from __future__ import annotations

import logging
import ssl
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageCallback = Callable[[bytes, str, str], None]

DEFAULT_PORTS = {
    'mqtt': 1883,
    'tcp': 1883,
    'mqtts': 8883,
    'ssl': 8883,
    'tls': 8883,
    'ws': 80,
    'wss': 443,
}


class BrokerError(Exception):
    """A broker operation failed."""


class BrokerAuthError(BrokerError):
    """The broker refused the configured credentials."""


@dataclass(frozen=True)
class BrokerAddress:
    host: str
    port: int
    transport: str = 'tcp'
    tls: bool = False
    path: str = '/'


def parse_broker_url(url: str) -> BrokerAddress:
    """Split a broker URL like ``mqtts://host:8883`` into connection settings."""
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise BrokerError(f"Unsupported broker url scheme: {scheme!r}")
    if not parsed.hostname:
        raise BrokerError(f"No host in broker url: {url!r}")
    return BrokerAddress(
        host=parsed.hostname,
        port=parsed.port or DEFAULT_PORTS[scheme],
        transport='websockets' if scheme in ('ws', 'wss') else 'tcp',
        tls=scheme in ('mqtts', 'ssl', 'tls', 'wss'),
        path=parsed.path or '/',
    )


class BrokerClient(ABC):
    """Abstract interface for a single MQTT broker connection.

    A client is used for one session only: connect once, use it until
    :meth:`wait_closed` returns, then close it.
    """

    @abstractmethod
    def connect(self) -> None:
        """Connect and wait for the broker to accept the session."""
        ...

    @abstractmethod
    def subscribe(self, topic: str, subscription_id: str, qos: int = 0) -> None:
        """Subscribe and wait for the broker to acknowledge."""
        ...

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> None: ...

    @abstractmethod
    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> None: ...

    @abstractmethod
    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the link to the broker is gone."""
        ...

    @abstractmethod
    def close(self) -> None: ...


class PahoBrokerClient(BrokerClient):
    """Concrete implementation wrapping paho.mqtt.client.Client.

    Inbound messages are matched against the active subscriptions and handed
    to ``on_message`` once per matching subscription id.
    """

    def __init__(
        self,
        url: str,
        client_id: str,
        username: str | None = None,
        password: str | None = None,
        keepalive: int = 60,
        tls_verify: bool = True,
        connect_timeout: float = 10.0,
        ack_timeout: float = 10.0,
        on_message: MessageCallback | None = None,
    ) -> None:
        self.url = url
        self._address = parse_broker_url(url)
        self._keepalive = keepalive
        self._connect_timeout = connect_timeout
        self._ack_timeout = ack_timeout
        self._on_message_cb = on_message

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
            transport=self._address.transport
        )

        if username:
            self._client.username_pw_set(username, password)

        if self._address.tls:
            if tls_verify:
                self._client.tls_set(cert_reqs=ssl.CERT_REQUIRED)
                self._client.tls_insecure_set(False)
            else:
                self._client.tls_set(cert_reqs=ssl.CERT_NONE)
                self._client.tls_insecure_set(True)

        if self._address.transport == "websockets":
            self._client.ws_set_options(path=self._address.path, headers=None)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_subscribe = self._on_subscribe

        self._connack = threading.Event()
        self._closed = threading.Event()
        self._connect_reason: Any = None
        self._connected = False

        self._lock = threading.Lock()
        self._acks = threading.Condition(self._lock)
        self._ack_results: dict[int, list[Any]] = {}
        self._subscriptions: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        address = self._address
        try:
            self._client.connect(address.host, address.port, keepalive=self._keepalive)
        except OSError as e:
            raise BrokerError(f"Failed to connect to {address.host}:{address.port}: {e}") from e
        self._client.loop_start()

        if not self._connack.wait(self._connect_timeout):
            raise BrokerError(f"Timed out waiting for {address.host}:{address.port} to accept connection")

        reason = self._connect_reason
        if reason is None:
            raise BrokerError(f"Connection to {address.host}:{address.port} closed during handshake")
        if reason.is_failure:
            if str(reason) in ("Not authorized", "Bad user name or password"):
                raise BrokerAuthError(f"Broker refused credentials: {reason}")
            raise BrokerError(f"Connection refused: {reason}")
        if not self._connected:
            raise BrokerError(f"Connection to {address.host}:{address.port} closed right after handshake")

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def close(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._connected = False
            self._closed.set()
            self._connack.set()
            with self._acks:
                self._acks.notify_all()

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, subscription_id: str, qos: int = 0) -> None:
        with self._lock:
            self._subscriptions[subscription_id] = topic
        result, mid = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._forget(subscription_id)
            raise BrokerError(f"Subscribe failed: {mqtt.error_string(result)}")
        try:
            reason_codes = self._wait_ack(mid, f"subscribe to {topic}")
        except BrokerError:
            self._forget(subscription_id)
            raise
        if any(rc.is_failure for rc in reason_codes):
            self._forget(subscription_id)
            raise BrokerError(f"Subscription to {topic} rejected: {', '.join(str(rc) for rc in reason_codes)}")
        logger.debug(f"[MQTT] Subscribed to {topic} (id={subscription_id})")

    def unsubscribe(self, subscription_id: str) -> None:
        topic = self._forget(subscription_id)
        if topic is None:
            return
        # Not waiting for UNSUBACK: this may run on the paho network thread.
        result, _mid = self._client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"Unsubscribe failed: {mqtt.error_string(result)}")
        logger.debug(f"[MQTT] Unsubscribed from {topic} (id={subscription_id})")

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> None:
        result = self._client.publish(topic, payload, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"Publish to {topic} failed: {mqtt.error_string(result.rc)}")

    def _forget(self, subscription_id: str) -> str | None:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None)

    def _wait_ack(self, mid: int, what: str) -> list[Any]:
        with self._acks:
            done = self._acks.wait_for(
                lambda: mid in self._ack_results or self._closed.is_set(),
                timeout=self._ack_timeout
            )
            if mid in self._ack_results:
                return self._ack_results.pop(mid)
        if not done:
            raise BrokerError(f"Timed out waiting for broker to acknowledge {what}")
        raise BrokerError(f"Connection closed before broker acknowledged {what}")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        self._connect_reason = reason_code
        self._connected = not reason_code.is_failure
        self._connack.set()

    def _on_disconnect(self, client: Any, userdata: Any, disconnect_flags: Any, reason_code: Any, properties: Any) -> None:
        if self._connected:
            logger.warning(f"[MQTT] Disconnected from {self._address.host} (code: {reason_code})")
        self._connected = False
        self._closed.set()
        self._connack.set()
        with self._acks:
            self._acks.notify_all()

    def _on_subscribe(self, client: Any, userdata: Any, mid: int, reason_code_list: Any, properties: Any) -> None:
        with self._acks:
            self._ack_results[mid] = list(reason_code_list)
            self._acks.notify_all()

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        if self._on_message_cb is None:
            return
        with self._lock:
            matches = [sid for sid, sub in self._subscriptions.items()
                       if mqtt.topic_matches_sub(sub, msg.topic)]
        for subscription_id in matches:
            try:
                self._on_message_cb(msg.payload, subscription_id, msg.topic)
            except Exception as e:
                logger.error(f"[MQTT] Failed to handle message on {msg.topic}: {e}")
