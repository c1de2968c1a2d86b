"""Payload encoding for the rx/tx/state topics.

Messages on the broker are JSON values. Lines to transmit are either a JSON
string or a JSON array of byte values; everything else is rejected once,
here, so the bridge only ever sees a decoded variant.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class TextPayload:
    text: str


@dataclass(frozen=True)
class BytesPayload:
    data: bytes


@dataclass(frozen=True)
class InvalidPayload:
    reason: str


TxPayload = Union[TextPayload, BytesPayload, InvalidPayload]


def decode_tx_payload(raw: bytes) -> TxPayload:
    """Decode an inbound tx message into a text or byte line."""
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return InvalidPayload(f"invalid JSON: {e}")

    if isinstance(value, str):
        return TextPayload(value)

    if isinstance(value, list):
        for byte in value:
            # bool is a subclass of int
            if not isinstance(byte, int) or isinstance(byte, bool) or not 0 <= byte <= 255:
                return InvalidPayload("array must only contain numbers in range [0..255]")
        return BytesPayload(bytes(value))

    return InvalidPayload(f"expected string or array, got {type(value).__name__}")


def encode_payload(value: Any) -> str:
    """Encode an outbound rx/state value as JSON."""
    if isinstance(value, (bytes, bytearray)):
        value = list(value)
    return json.dumps(value)
