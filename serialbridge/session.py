"""Broker session: keeps one MQTT connection alive, reconnecting forever."""
from __future__ import annotations

import enum
import logging
import socket
import threading
from typing import Callable

from . import topics
from .broker_client import BrokerClient, MessageCallback, PahoBrokerClient
from .events import MessageReceived, SessionConnected, SessionDisconnected, SessionEvent, SessionListener
from .options import BrokerOptions
from .sleep import InterruptibleSleep

logger = logging.getLogger(__name__)

ClientFactory = Callable[[BrokerOptions, MessageCallback], BrokerClient]


class SessionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


def create_paho_client(options: BrokerOptions, on_message: MessageCallback) -> BrokerClient:
    """Build a fresh paho-backed client for one session."""
    client_id = topics.sanitize_client_id(socket.gethostname(), options.client_id_prefix)
    return PahoBrokerClient(
        url=options.url,
        client_id=client_id,
        username=options.user if options.has_credentials else None,
        password=options.password if options.has_credentials else None,
        keepalive=options.keepalive,
        tls_verify=options.tls_verify,
        connect_timeout=options.connect_timeout,
        ack_timeout=options.ack_timeout,
        on_message=on_message,
    )


class BrokerSession:
    """Owns the connection to the broker and reports its lifecycle.

    :meth:`run` connects, waits for the link to drop, and starts over. After
    a failed attempt it waits ``retry_delay`` before the next one; after a
    session that connected successfully the first retry is immediate.

    Listeners receive ``SessionConnected`` (with the live client),
    ``SessionDisconnected`` and ``MessageReceived`` events.
    """

    def __init__(
        self,
        options: BrokerOptions,
        client_factory: ClientFactory = create_paho_client,
        sleeper: InterruptibleSleep | None = None,
    ) -> None:
        self.options = options
        self._client_factory = client_factory
        self._sleeper = sleeper or InterruptibleSleep()
        self._listeners: list[SessionListener] = []
        self._lock = threading.Lock()
        self._client: BrokerClient | None = None
        self._state = SessionState.DISCONNECTED
        self._should_exit = False

    def add_listener(self, listener: SessionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client(self) -> BrokerClient | None:
        """The live client while connected, else None."""
        with self._lock:
            return self._client if self._state is SessionState.CONNECTED else None

    def run(self) -> None:
        """Connect and keep reconnecting until :meth:`stop` is called."""
        last_success = False
        while not self._should_exit:
            client: BrokerClient | None = None
            connected = False
            try:
                self._state = SessionState.CONNECTING
                logger.info(f"[MQTT] Connecting to {self.options.url} ...")
                client = self._client_factory(self.options, self._handle_message)
                with self._lock:
                    self._client = client
                if self.options.has_credentials:
                    logger.info(f"[MQTT] Logging in as {self.options.user}")
                else:
                    logger.info("[MQTT] Using anonymous access")
                client.connect()
                if self._should_exit:
                    break
                last_success = True
                with self._lock:
                    self._state = SessionState.CONNECTED
                logger.info("[MQTT] Connected")
                connected = True
                self._emit(SessionConnected(client))
                client.wait_closed()
            except Exception as e:
                logger.warning(f"[MQTT] Connect error: {e}")
            finally:
                with self._lock:
                    self._state = SessionState.DISCONNECTED
                    self._client = None
                if connected:
                    self._emit(SessionDisconnected())
                    logger.info("[MQTT] Disconnected")
                self._close_client(client)

            if self._should_exit:
                break
            if not last_success:
                # Quick reconnect on first error, otherwise wait a bit
                self._sleeper.sleep(self.options.retry_delay / 1000)
            last_success = False
        logger.debug("[MQTT] Session loop stopped")

    def stop(self) -> None:
        """Leave the reconnect loop and drop the current connection."""
        self._should_exit = True
        self._sleeper.wake()
        with self._lock:
            client = self._client
        self._close_client(client)

    def _close_client(self, client: BrokerClient | None) -> None:
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            # ignore follow-up error
            logger.debug(f"[MQTT] Error closing client: {e}")

    def _handle_message(self, payload: bytes, subscription_id: str, topic: str) -> None:
        self._emit(MessageReceived(payload, subscription_id, topic))

    def _emit(self, event: SessionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"[MQTT] Session listener failed on {type(event).__name__}: {e}")
