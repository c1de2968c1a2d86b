"""Bridge between open serial ports and their MQTT topics."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from . import topics
from .broker_client import BrokerClient
from .events import (
    DataReceived,
    MessageReceived,
    PortClosed,
    PortError,
    PortEvent,
    SessionConnected,
    SessionDisconnected,
    SessionEvent,
)
from .framing import LineFramer
from .options import BridgePortOptions
from .payloads import InvalidPayload, TextPayload, decode_tx_payload, encode_payload
from .serial_connection import SerialConnection
from .session import BrokerSession

logger = logging.getLogger(__name__)

PublishCallback = Callable[['Connection', str, Any], None]
CloseCallback = Callable[['Connection'], None]


class BridgeError(Exception):
    """A port could not be attached to the broker."""


class Connection:
    """One serial port bound to its ``<node>/<prefix>`` topics."""

    def __init__(
        self,
        port: SerialConnection,
        options: BridgePortOptions,
        on_publish: PublishCallback,
        on_close: CloseCallback,
    ) -> None:
        self.options = options
        self.port = port
        self._on_publish = on_publish
        self._on_close = on_close
        self._framer = LineFramer(options.delimiter, options.encoding) if options.delimiter else None
        self._started = False
        self.tag = f"[{options.topic_prefix}@{options.node}]"

    @property
    def subscription_id(self) -> str:
        return self.options.topic_prefix

    def bind(self) -> None:
        """Start receiving port events. A port that already closed reports it right away."""
        self.port.add_listener(self._handle_port_event)

    def start(self) -> None:
        """Announce the port on the state topic, then start reading from it."""
        if not self.port.is_open:
            return
        logger.debug(f"{self.tag} start")
        self._publish(topics.STATE, topics.STATE_OPEN)
        if not self.port.is_open:
            # announcing failed and took the port down
            return
        self._started = True
        self.port.start()

    def dispatch(self, raw: bytes) -> None:
        """Write a tx message to the port."""
        if not self._started:
            logger.debug(f"{self.tag} Dropping tx before open announcement")
            return

        payload = decode_tx_payload(raw)
        if isinstance(payload, InvalidPayload):
            logger.warning(f"{self.tag} Invalid line received, {payload.reason}")
            return

        if isinstance(payload, TextPayload):
            data = payload.text.encode(self.options.encoding)
        else:
            data = payload.data
        if self._framer:
            data = self._framer.frame(data)
        logger.debug(f"{self.tag} tx {data!r}")
        self.port.write(data)

    def destroy(self, error: Exception | None = None) -> None:
        if error is not None:
            logger.debug(f"{self.tag} Closing port: {error}")
        self.port.close()

    def _publish(self, topic_type: str, value: Any) -> None:
        topic = topics.get_topic(self.options.node, self.options.topic_prefix, topic_type)
        self._on_publish(self, topic, value)

    def _handle_port_event(self, event: PortEvent) -> None:
        if isinstance(event, DataReceived):
            if self._framer:
                for line in self._framer.feed(event.data):
                    logger.debug(f"{self.tag} rx {line!r}")
                    self._publish(topics.RX, line)
            else:
                logger.debug(f"{self.tag} rx {event.data!r}")
                self._publish(topics.RX, event.data)
        elif isinstance(event, PortError):
            logger.warning(f"{self.tag} error {event.error}")
            self._publish(topics.STATE, topics.error_state(event.error))
        elif isinstance(event, PortClosed):
            logger.debug(f"{self.tag} close")
            if self._started:
                self._publish(topics.STATE, topics.STATE_CLOSE)
            self._on_close(self)


class Bridge:
    """Keeps one broker subscription per open serial port.

    A port is attached once the broker session is up; it stays bridged until
    the port closes or the session drops, whichever comes first. Losing the
    session closes every bridged port, since subscriptions do not survive a
    reconnect.
    """

    def __init__(self, session: BrokerSession) -> None:
        self._session = session
        self._lock = threading.Lock()
        self._client: BrokerClient | None = None
        self._connections: dict[str, Connection] = {}
        self._attaching: set[str] = set()
        # prefixes whose old subscription is still being dropped
        self._detaching: set[str] = set()
        session.add_listener(self._handle_session_event)

    @property
    def connections(self) -> list[Connection]:
        with self._lock:
            return list(self._connections.values())

    def attach(self, port: SerialConnection, options: BridgePortOptions) -> None:
        """Subscribe to the port's tx topic and announce it as open.

        Raises BridgeError when the topic prefix is already bridged, when
        there is no broker session, or when either side went away meanwhile.
        """
        prefix = options.topic_prefix
        with self._lock:
            if prefix in self._connections or prefix in self._attaching:
                raise BridgeError(f"a port with topic prefix '{prefix}' is already connected")
            if prefix in self._detaching:
                raise BridgeError(f"the previous port with topic prefix '{prefix}' is still closing")
            client = self._client
            if client is None:
                raise BridgeError("no MQTT connection")
            self._attaching.add(prefix)

        try:
            conn = Connection(port, options, self._safe_publish, self._handle_connection_closed)
            client.subscribe(topics.tx_topic(options.node, prefix), prefix, qos=self._session.options.qos)
            with self._lock:
                if self._client is not client:
                    raise BridgeError("MQTT connection lost while attaching")
                self._connections[prefix] = conn
        finally:
            with self._lock:
                self._attaching.discard(prefix)

        conn.bind()
        if not port.is_open:
            raise BridgeError(f"serial port for '{prefix}' closed while attaching")
        conn.start()

    def shutdown(self) -> None:
        """Close all ports and announce them closed on the outgoing session."""
        with self._lock:
            old_client = self._client
            old_connections = list(self._connections.values())

        self._handle_disconnect()

        if old_client is None:
            return
        # Publish the close states here: the ports' own close messages are
        # skipped because the session is already gone.
        for conn in old_connections:
            topic = topics.state_topic(conn.options.node, conn.options.topic_prefix)
            try:
                old_client.publish(topic, encode_payload(topics.STATE_CLOSE), qos=self._session.options.qos)
            except Exception as e:
                logger.warning(f"{conn.tag} Failed to publish close state: {e}")

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def _handle_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, MessageReceived):
            self._handle_message(event)
        elif isinstance(event, SessionConnected):
            self._handle_connect(event.client)
        elif isinstance(event, SessionDisconnected):
            self._handle_disconnect()

    def _handle_connect(self, client: BrokerClient) -> None:
        with self._lock:
            self._client = client

    def _handle_disconnect(self) -> None:
        with self._lock:
            self._client = None
            connections = list(self._connections.values())
        for conn in connections:
            conn.destroy(BridgeError("MQTT connection closed"))

    def _handle_message(self, event: MessageReceived) -> None:
        with self._lock:
            conn = self._connections.get(event.subscription_id)
        if conn is None:
            return
        conn.dispatch(event.payload)

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _handle_connection_closed(self, conn: Connection) -> None:
        prefix = conn.subscription_id
        with self._lock:
            if self._connections.get(prefix) is not conn:
                return
            del self._connections[prefix]
            self._detaching.add(prefix)
        try:
            self._safe_unsubscribe(conn)
        finally:
            with self._lock:
                self._detaching.discard(prefix)

    def _safe_publish(self, conn: Connection, topic: str, value: Any) -> None:
        with self._lock:
            client = self._client
        if client is None:
            return
        try:
            client.publish(topic, encode_payload(value), qos=self._session.options.qos)
        except Exception as e:
            logger.warning(f"{conn.tag} Publish to {topic} failed: {e}")
            conn.destroy(e)

    def _safe_unsubscribe(self, conn: Connection) -> None:
        with self._lock:
            client = self._client
        if client is None:
            return
        try:
            client.unsubscribe(conn.subscription_id)
        except Exception as e:
            logger.warning(f"{conn.tag} Unsubscribe failed: {e}")
            conn.destroy(e)
