"""Topic naming and MQTT client id helpers."""
from __future__ import annotations

import re

RX = 'rx'
TX = 'tx'
STATE = 'state'

STATE_OPEN = 'open'
STATE_CLOSE = 'close'


def get_topic(node: str, topic_prefix: str, topic_type: str) -> str:
    """Build ``<node>/<prefix>/<type>``; an empty node is left out."""
    parts = [part for part in (node, topic_prefix) if part]
    return '/'.join(parts + [topic_type])


def tx_topic(node: str, topic_prefix: str) -> str:
    return get_topic(node, topic_prefix, TX)


def state_topic(node: str, topic_prefix: str) -> str:
    return get_topic(node, topic_prefix, STATE)


def error_state(error: BaseException) -> str:
    """State message for a device error: ``error <kind> <message>``."""
    return f"error {type(error).__name__} {error}"


def sanitize_client_id(name: str, prefix: str = "sertomqtt_") -> str:
    """Convert a name to a valid MQTT client ID."""
    client_id = prefix + name.replace(" ", "_")
    client_id = re.sub(r"[^a-zA-Z0-9_-]", "", client_id)
    return client_id[:23]
