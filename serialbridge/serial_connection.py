"""Serial port abstraction: open handles that report data, errors and close."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

import serial

from .events import DataReceived, PortClosed, PortError, PortEvent, PortListener
from .options import SerialOptions

logger = logging.getLogger(__name__)

PARITY_MAP = {
    'none': serial.PARITY_NONE,
    'even': serial.PARITY_EVEN,
    'odd': serial.PARITY_ODD,
    'mark': serial.PARITY_MARK,
    'space': serial.PARITY_SPACE,
}

STOP_BITS_MAP = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}


class SerialConnection(ABC):
    """An open serial port.

    Listeners receive ``DataReceived``, ``PortError`` and ``PortClosed``
    events. ``PortClosed`` is delivered exactly once; a listener added after
    the port closed receives it immediately. Nothing is read from the device
    until :meth:`start` is called, so listeners can be wired first.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[PortListener] = []
        self._state_lock = threading.Lock()
        self._closed = False

    def add_listener(self, listener: PortListener) -> None:
        with self._state_lock:
            closed = self._closed
            if not closed:
                self._listeners.append(listener)
        if closed:
            self._call(listener, PortClosed())

    def _emit(self, event: PortEvent) -> None:
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            self._call(listener, event)

    def _call(self, listener: PortListener, event: PortEvent) -> None:
        try:
            listener(event)
        except Exception as e:
            logger.exception(f"[SERIAL] Listener for {self.name} failed on {type(event).__name__}: {e}")

    def _mark_closed(self) -> list[PortListener] | None:
        """Flag the port closed; returns the listeners to notify, or None if already closed."""
        with self._state_lock:
            if self._closed:
                return None
            self._closed = True
            listeners = self._listeners
            self._listeners = []
            return listeners

    def _notify_closed(self, listeners: list[PortListener]) -> None:
        event = PortClosed()
        for listener in listeners:
            self._call(listener, event)

    @property
    def is_open(self) -> bool:
        with self._state_lock:
            return not self._closed

    @abstractmethod
    def start(self) -> None:
        """Start delivering received data to listeners."""
        ...

    @abstractmethod
    def write(self, data: bytes) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class RealSerialConnection(SerialConnection):
    """Concrete implementation wrapping serial.Serial with a reader thread."""

    def __init__(self, port: serial.Serial, name: str | None = None) -> None:
        super().__init__(name or port.port)
        self._port = port
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None

    def start(self) -> None:
        if self._reader is not None or not self.is_open:
            return
        self._reader = threading.Thread(
            target=self._read_loop,
            daemon=True,
            name=f"Serial-{self.name}"
        )
        self._reader.start()

    def _read_loop(self) -> None:
        while self.is_open:
            try:
                data = self._port.read(self._port.in_waiting or 1)
            except (serial.SerialException, OSError) as e:
                self._fail(e)
                return
            if data:
                logger.debug(f"[SERIAL] {self.name} RX: {data!r}")
                self._emit(DataReceived(data))

    def write(self, data: bytes) -> None:
        if not self.is_open:
            logger.debug(f"[SERIAL] Dropping write to closed port {self.name}")
            return
        try:
            with self._write_lock:
                self._port.write(data)
            logger.debug(f"[SERIAL] {self.name} TX: {data!r}")
        except (serial.SerialException, OSError) as e:
            self._fail(e)

    def _fail(self, error: Exception) -> None:
        if not self.is_open:
            # Closing the port makes a blocked read fail, that is not an error.
            return
        logger.warning(f"[SERIAL] Error on {self.name}: {error}")
        self._emit(PortError(error))
        self.close()

    def close(self) -> None:
        listeners = self._mark_closed()
        if listeners is None:
            return
        logger.debug(f"[SERIAL] Closing {self.name}")
        try:
            self._port.close()
        except Exception as e:
            logger.debug(f"[SERIAL] Error closing {self.name}: {e}")
        self._notify_closed(listeners)


def open_port(path: str, options: SerialOptions, timeout: float = 0.1) -> RealSerialConnection:
    """Open the serial device at ``path``; raises serial.SerialException on failure."""
    port = serial.Serial(
        port=path,
        baudrate=options.baud_rate,
        parity=PARITY_MAP[options.parity],
        stopbits=STOP_BITS_MAP[options.stop_bits],
        bytesize=options.data_bits,
        timeout=timeout,
        rtscts=False
    )
    logger.info(f"[SERIAL] Opened {path} ({options.baud_rate} baud, {options.data_bits}"
                f"{PARITY_MAP[options.parity]}{options.stop_bits})")
    return RealSerialConnection(port, path)
