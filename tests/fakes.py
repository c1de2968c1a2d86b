"""Shared fake implementations for bridge tests."""
from __future__ import annotations

import threading
from typing import Any, Callable

from serialbridge.broker_client import BrokerClient, MessageCallback
from serialbridge.events import DataReceived, PortError, SessionEvent, SessionListener
from serialbridge.options import BridgePortOptions, BrokerOptions, PortOptions, SerialOptions
from serialbridge.serial_connection import SerialConnection
from serialbridge.sleep import InterruptibleSleep


class FakeSerialConnection(SerialConnection):
    """In-memory port: records writes, data and errors are injected by the test."""

    def __init__(self, name: str = "/dev/ttyFAKE0") -> None:
        super().__init__(name)
        self.written: list[bytes] = []
        self.started = False
        self.close_calls = 0

    def start(self) -> None:
        self.started = True

    def write(self, data: bytes) -> None:
        if not self.is_open:
            return
        self.written.append(data)

    def close(self) -> None:
        self.close_calls += 1
        listeners = self._mark_closed()
        if listeners is None:
            return
        self._notify_closed(listeners)

    def feed(self, data: bytes) -> None:
        """Pretend the device sent ``data``."""
        self._emit(DataReceived(data))

    def fail(self, error: Exception) -> None:
        """Pretend the device failed; the port closes like a real one does."""
        self._emit(PortError(error))
        self.close()


class FakeBrokerClient(BrokerClient):
    """Records all calls for assertion; failures are configurable per method."""

    def __init__(
        self,
        on_message: MessageCallback | None = None,
        *,
        fail_connect: Exception | None = None,
        fail_subscribe: Exception | None = None,
        fail_unsubscribe: Exception | None = None,
        fail_publish: Exception | None = None,
    ) -> None:
        self.on_message = on_message
        self.fail_connect = fail_connect
        self.fail_subscribe = fail_subscribe
        self.fail_unsubscribe = fail_unsubscribe
        self.fail_publish = fail_publish
        self.calls: list[str] = []
        self.published: list[tuple[str, str, int, bool]] = []
        self.subscribed: list[tuple[str, str, int]] = []
        self.unsubscribed: list[str] = []
        self.subscriptions: dict[str, str] = {}
        self.close_calls = 0
        self._closed = threading.Event()

    def connect(self) -> None:
        self.calls.append('connect')
        if self.fail_connect:
            raise self.fail_connect

    def subscribe(self, topic: str, subscription_id: str, qos: int = 0) -> None:
        self.calls.append('subscribe')
        if self.fail_subscribe:
            raise self.fail_subscribe
        self.subscribed.append((topic, subscription_id, qos))
        self.subscriptions[subscription_id] = topic

    def unsubscribe(self, subscription_id: str) -> None:
        self.calls.append('unsubscribe')
        if self.fail_unsubscribe:
            raise self.fail_unsubscribe
        self.unsubscribed.append(subscription_id)
        self.subscriptions.pop(subscription_id, None)

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> None:
        self.calls.append('publish')
        if self.fail_publish:
            raise self.fail_publish
        self.published.append((topic, payload, qos, retain))

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def close(self) -> None:
        self.calls.append('close')
        self.close_calls += 1
        self._closed.set()

    def simulate_drop(self) -> None:
        """Link to the broker lost without anyone calling close()."""
        self._closed.set()

    def deliver(self, topic: str, payload: bytes) -> None:
        """Hand an inbound message to every subscription on ``topic``."""
        for subscription_id, sub in list(self.subscriptions.items()):
            if sub == topic and self.on_message:
                self.on_message(payload, subscription_id, topic)

    def published_to(self, topic: str) -> list[str]:
        return [payload for t, payload, _qos, _retain in self.published if t == topic]


class FakeSession:
    """Stands in for BrokerSession: the test drives the events."""

    def __init__(self, options: BrokerOptions | None = None) -> None:
        self.options = options or BrokerOptions(url="mqtt://localhost:1883")
        self._listeners: list[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


class FakeSleep(InterruptibleSleep):
    """Returns at once, recording every requested duration."""

    def __init__(self, on_sleep: Callable[[int], None] | None = None) -> None:
        super().__init__()
        self.durations: list[float] = []
        self.interrupts = 0
        self.wakes = 0
        self._on_sleep = on_sleep

    def sleep(self, timeout: float) -> bool:
        self.durations.append(timeout)
        if self._on_sleep:
            self._on_sleep(len(self.durations))
        return False

    def interrupt(self) -> None:
        self.interrupts += 1

    def wake(self) -> None:
        self.wakes += 1


def make_port_options(
    topic_prefix: str = "dev1",
    node: str = "node1",
    delimiter: str | None = None,
    **serial: Any,
) -> PortOptions:
    return PortOptions(
        serial=SerialOptions(**serial),
        bridge=BridgePortOptions(node=node, topic_prefix=topic_prefix, delimiter=delimiter),
    )


def make_config(**overrides: Any) -> dict[str, Any]:
    """Factory for minimal valid TOML config dict."""
    config: dict[str, Any] = {
        'general': {'log_level': 'INFO'},
        'scanner': {'expected_ports': 1, 'scan_interval': 1000, 'idle_scan_interval': 60000},
        'broker': {'url': 'mqtt://localhost:1883'},
        'ports': {
            '/dev/ttyUSB0': {'node': 'node1', 'topic_prefix': 'dev1', 'delimiter': '\n'},
        },
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and key in config and isinstance(config[key], dict) and key != 'ports':
            config[key].update(value)
        else:
            config[key] = value
    return config
