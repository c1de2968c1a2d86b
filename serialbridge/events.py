"""Event variants emitted by serial ports and the broker session."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:
    from .broker_client import BrokerClient


# ------------------------------------------------------------------
# Serial port events
# ------------------------------------------------------------------

@dataclass(frozen=True)
class DataReceived:
    data: bytes


@dataclass(frozen=True)
class PortError:
    error: Exception


@dataclass(frozen=True)
class PortClosed:
    pass


PortEvent = Union[DataReceived, PortError, PortClosed]
PortListener = Callable[[PortEvent], None]


# ------------------------------------------------------------------
# Broker session events
# ------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConnected:
    client: BrokerClient


@dataclass(frozen=True)
class SessionDisconnected:
    pass


@dataclass(frozen=True)
class MessageReceived:
    """Inbound broker message, tagged with the subscription it matched."""
    payload: bytes
    subscription_id: str
    topic: str


SessionEvent = Union[SessionConnected, SessionDisconnected, MessageReceived]
SessionListener = Callable[[SessionEvent], None]
