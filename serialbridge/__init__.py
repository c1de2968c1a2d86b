"""Serial port to MQTT bridge package."""
from __future__ import annotations

import logging
from typing import Any

from .bridge import Bridge
from .events import PortClosed, PortEvent, SessionConnected, SessionDisconnected, SessionEvent
from .options import PortOptions, load_bridge_options
from .scanner import SerialPortScanner
from .serial_connection import SerialConnection
from .session import BrokerSession
from . import runner

logger = logging.getLogger(__name__)


class SerialMqttBridge:
    """Facade: builds the broker session, bridge and scanner and wires them together."""

    def __init__(self, config: dict[str, Any]) -> None:
        self.config = config
        self.should_exit = False
        self.options = load_bridge_options(config)

        self.session = BrokerSession(self.options.broker)
        self.bridge = Bridge(self.session)
        self.scanner = SerialPortScanner(self.options.scanner, self._on_port_open)
        self.scanner.pause()  # resumed once the broker is connected
        self.session.add_listener(self._on_session_event)

    def run(self) -> None:
        runner.run(self)

    def handle_signal(self, signum: int, frame: Any) -> None:
        runner.handle_signal(self, signum, frame)

    def _on_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, SessionConnected):
            logger.info("MQTT connected, scanning for ports...")
            self.scanner.resume()
        elif isinstance(event, SessionDisconnected):
            logger.info("MQTT disconnected, reconnecting...")
            self.scanner.pause()

    def _on_port_open(self, port: SerialConnection, options: PortOptions, port_name: str) -> None:
        prefix = options.bridge.topic_prefix
        self.bridge.attach(port, options.bridge)
        logger.info(f"Serial port '{port_name}' found, connected to '{prefix}'")

        def log_close(event: PortEvent) -> None:
            if isinstance(event, PortClosed):
                logger.info(f"Serial port '{port_name}' ('{prefix}') closed.")

        port.add_listener(log_close)
