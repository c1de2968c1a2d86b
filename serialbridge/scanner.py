"""Serial port scanner.

Continuously scans for the configured serial ports, opens new ones and
hands them off to whoever needs them.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .events import PortClosed, PortEvent
from .options import ConfigError, PortOptions, ScannerOptions, SerialOptions
from .serial_connection import SerialConnection, open_port
from .sleep import InterruptibleSleep

logger = logging.getLogger(__name__)

OnOpenCallback = Callable[[SerialConnection, PortOptions, str], None]
OpenPort = Callable[[str, SerialOptions], SerialConnection]
ResolvePath = Callable[[str], str]


def resolve_device(path: str) -> str:
    """Resolve a (symlinked) device path to the real device; raises OSError if absent."""
    return str(Path(path).resolve(strict=True))


@dataclass
class PortRecord:
    identity: str
    options: PortOptions
    port: SerialConnection
    # Set once the open callback accepted the port.
    announced: bool = field(default=False)


class SerialPortScanner:
    """Continuously scan for configured serial ports and try to open them.

    The configured paths can be symlinks (e.g. ``/dev/serial/by-id/...``);
    ports are tracked by their resolved device path so the same device is
    never opened twice under different names.

    ``on_open`` is called for every port that was found and opened. If it
    raises, the port is closed again and retried on the next scan.
    """

    def __init__(
        self,
        options: ScannerOptions,
        on_open: OnOpenCallback,
        opener: OpenPort = open_port,
        resolver: ResolvePath = resolve_device,
        sleeper: InterruptibleSleep | None = None,
    ) -> None:
        if len(options.ports) == 0:
            raise ConfigError("invalid options: minimum one port must be given")
        self.options = options
        self._on_open = on_open
        self._opener = opener
        self._resolver = resolver
        self._sleeper = sleeper or InterruptibleSleep()
        self._lock = threading.Lock()
        self._ports: dict[str, PortRecord] = {}
        self._paused = False
        self._running = False
        self._should_exit = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def open_ports(self) -> list[str]:
        with self._lock:
            return list(self._ports)

    def pause(self) -> None:
        logger.debug("[SCANNER] Pause")
        self._paused = True

    def resume(self) -> None:
        logger.debug("[SCANNER] Resume")
        self._paused = False
        self._sleeper.wake()

    def stop(self) -> None:
        self._should_exit = True
        self._sleeper.wake()

    def run(self) -> None:
        """Scan until :meth:`stop` is called. Ticks never overlap."""
        if self._running:
            raise RuntimeError("scanner already running")
        self._running = True
        logger.info(f"[SCANNER] Serial port scanner running, scanning for ports={list(self.options.ports)}")
        try:
            while not self._should_exit:
                if not self._paused:
                    self.scan_once()

                # Switch to lower scanning interval (just in case) when
                # expected number of ports is found, but keep responsive
                # if something happens (i.e. existing port closes).
                open_count = len(self.open_ports)
                if open_count < self.options.expected_ports and not self._paused:
                    interval = self.options.scan_interval
                else:
                    interval = self.options.idle_scan_interval
                if self._should_exit:
                    break
                self._sleeper.sleep(interval / 1000)
        finally:
            self._running = False
            logger.debug("[SCANNER] Stopped")

    def scan_once(self) -> None:
        """Open every configured port that appeared since the last scan."""
        for identity, options in self._scan().items():
            logger.info(f"[SCANNER] Found new serial port {identity}")
            try:
                port = self._opener(identity, options.serial)
            except Exception as e:
                logger.warning(f"[SCANNER] Error opening serial port {identity}: {e}")
                continue
            logger.debug(f"[SCANNER] Serial port {identity} opened")

            record = PortRecord(identity, options, port)
            with self._lock:
                self._ports[identity] = record
            port.add_listener(lambda event, record=record: self._on_port_event(record, event))

            try:
                self._on_open(port, options, identity)
                record.announced = True
            except Exception as e:
                logger.warning(f"[SCANNER] Error initializing serial port {identity}: {e}")
                self._forget(record)
                port.close()

    def _scan(self) -> dict[str, PortOptions]:
        """Resolve configured paths and return the ones not open yet."""
        # Convert configured names to actual device names, so the same
        # device listed under two names (e.g. a /dev/serial/by-id/* link
        # and its target) is only opened once.
        found: dict[str, PortOptions] = {}
        for path, options in self.options.ports.items():
            try:
                found[self._resolver(path)] = options
            except (OSError, RuntimeError) as e:
                # RuntimeError: symlink loop (Python < 3.13)
                logger.debug(f"[SCANNER] Port {path} not available: {e}")

        with self._lock:
            # Remove ports that no longer exist, just in case
            for identity in [i for i in self._ports if i not in found]:
                logger.debug(f"[SCANNER] Serial port {identity} disappeared")
                del self._ports[identity]
            return {identity: options for identity, options in found.items() if identity not in self._ports}

    def _on_port_event(self, record: PortRecord, event: PortEvent) -> None:
        if not isinstance(event, PortClosed):
            return
        logger.info(f"[SCANNER] Serial port {record.identity} closed")
        self._forget(record)
        # Ports rejected by on_open do not wake the loop; they wait for the next regular scan.
        if record.announced:
            self._sleeper.interrupt()

    def _forget(self, record: PortRecord) -> None:
        with self._lock:
            if self._ports.get(record.identity) is record:
                del self._ports[record.identity]
