"""Cancellable sleep used by the scan and reconnect loops."""
from __future__ import annotations

import threading


class InterruptibleSleep:
    """Sleep that can be cut short from another thread.

    Every call to :meth:`sleep` waits on its own event, so an interrupt only
    ever wakes the sleep that is pending at that moment. Calling
    :meth:`interrupt` while nothing is sleeping does not affect the next call.

    :meth:`wake` is the sticky variant for requests that must not get lost
    while the sleeping thread is still on its way into :meth:`sleep`: with
    nothing sleeping, the next call returns at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: threading.Event | None = None
        self._wake_next = False

    def sleep(self, timeout: float) -> bool:
        """Block for ``timeout`` seconds. Returns True if interrupted."""
        event = threading.Event()
        with self._lock:
            if self._wake_next:
                self._wake_next = False
                return True
            self._pending = event
        try:
            return event.wait(max(0.0, timeout))
        finally:
            with self._lock:
                if self._pending is event:
                    self._pending = None

    def interrupt(self) -> None:
        with self._lock:
            event = self._pending
            self._pending = None
        if event is not None:
            event.set()

    def wake(self) -> None:
        with self._lock:
            event = self._pending
            self._pending = None
            if event is None:
                self._wake_next = True
        if event is not None:
            event.set()
