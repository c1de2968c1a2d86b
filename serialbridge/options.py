"""Typed bridge options built from the raw TOML configuration."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

PARITIES = ('none', 'even', 'odd', 'mark', 'space')
DATA_BITS = (5, 6, 7, 8)
STOP_BITS = (1, 1.5, 2)
BROKER_SCHEMES = ('mqtt', 'tcp', 'mqtts', 'ssl', 'tls', 'ws', 'wss')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class ConfigError(Exception):
    """Raised when the configuration cannot be used to start the bridge."""


@dataclass
class SerialOptions:
    """Serial line settings; defaults apply to anything not configured."""
    baud_rate: int = 115200
    parity: str = 'none'
    data_bits: int = 8
    stop_bits: float = 1


@dataclass
class BridgePortOptions:
    """How one serial port is exposed on the broker."""
    node: str
    topic_prefix: str
    delimiter: str | None = None
    encoding: str = 'utf-8'


@dataclass
class PortOptions:
    serial: SerialOptions
    bridge: BridgePortOptions


@dataclass
class ScannerOptions:
    ports: dict[str, PortOptions]
    expected_ports: int = 1
    scan_interval: int = 1000
    idle_scan_interval: int = 60 * 1000


@dataclass
class BrokerOptions:
    url: str
    user: str | None = None
    password: str | None = None
    client_id_prefix: str = 'sertomqtt_'
    keepalive: int = 60
    qos: int = 0
    tls_verify: bool = True
    retry_delay: int = 3000
    connect_timeout: float = 10.0
    ack_timeout: float = 10.0

    @property
    def has_credentials(self) -> bool:
        return self.user is not None and self.password is not None


@dataclass
class BridgeOptions:
    scanner: ScannerOptions
    broker: BrokerOptions
    log_level: str = 'INFO'


def _table(config: dict[str, Any], name: str) -> dict[str, Any]:
    section = config.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _int_option(section: dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"invalid {key}: {value!r} (expected integer >= {minimum})")
    return value


def _seconds_option(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"invalid {key}: {value!r} (expected seconds > 0)")
    return float(value)


def parse_serial_options(path: str, raw: dict[str, Any]) -> SerialOptions:
    """Merge configured serial overrides over the defaults."""
    defaults = SerialOptions()

    baud_rate = raw.get('baud_rate', defaults.baud_rate)
    if isinstance(baud_rate, bool) or not isinstance(baud_rate, int) or baud_rate <= 0:
        raise ConfigError(f"invalid baud_rate for port '{path}': {baud_rate!r}")

    parity = raw.get('parity', defaults.parity)
    if parity not in PARITIES:
        raise ConfigError(f"invalid parity for port '{path}': {parity!r} (expected one of {', '.join(PARITIES)})")

    data_bits = raw.get('data_bits', defaults.data_bits)
    if data_bits not in DATA_BITS:
        raise ConfigError(f"invalid data_bits for port '{path}': {data_bits!r}")

    stop_bits = raw.get('stop_bits', defaults.stop_bits)
    if stop_bits not in STOP_BITS:
        raise ConfigError(f"invalid stop_bits for port '{path}': {stop_bits!r}")

    return SerialOptions(baud_rate=baud_rate, parity=parity, data_bits=data_bits, stop_bits=stop_bits)


def parse_bridge_port_options(path: str, raw: dict[str, Any]) -> BridgePortOptions:
    node = raw.get('node')
    if not isinstance(node, str):
        raise ConfigError(f"invalid node for port '{path}'")

    topic_prefix = raw.get('topic_prefix')
    if not isinstance(topic_prefix, str) or not topic_prefix:
        raise ConfigError(f"invalid topic_prefix for port '{path}'")
    if '+' in topic_prefix or '#' in topic_prefix or '+' in node or '#' in node:
        raise ConfigError(f"node and topic_prefix for port '{path}' must not contain MQTT wildcards")

    delimiter = raw.get('delimiter')
    if delimiter is not None and (not isinstance(delimiter, str) or not delimiter):
        raise ConfigError(f"invalid delimiter for port '{path}': must be a non-empty string")

    encoding = raw.get('encoding', 'utf-8')
    try:
        ''.encode(encoding)
    except (LookupError, TypeError):
        raise ConfigError(f"unknown encoding for port '{path}': {encoding!r}") from None

    return BridgePortOptions(node=node, topic_prefix=topic_prefix, delimiter=delimiter, encoding=encoding)


def parse_scanner_options(config: dict[str, Any]) -> ScannerOptions:
    raw_ports = config.get('ports', {})
    if not isinstance(raw_ports, dict) or len(raw_ports) == 0:
        raise ConfigError("invalid options: minimum one port must be given")

    ports: dict[str, PortOptions] = {}
    prefixes: dict[str, str] = {}
    for path, raw in raw_ports.items():
        if not isinstance(raw, dict):
            raise ConfigError(f"invalid options for port '{path}'")
        port = PortOptions(
            serial=parse_serial_options(path, raw),
            bridge=parse_bridge_port_options(path, raw),
        )
        other = prefixes.get(port.bridge.topic_prefix)
        if other is not None:
            logger.warning(f"Ports '{other}' and '{path}' share topic prefix '{port.bridge.topic_prefix}', "
                           "only one of them can be bridged at a time")
        prefixes[port.bridge.topic_prefix] = path
        ports[path] = port

    scanner = _table(config, 'scanner')
    return ScannerOptions(
        ports=ports,
        expected_ports=_int_option(scanner, 'expected_ports', 1, minimum=0),
        scan_interval=_int_option(scanner, 'scan_interval', 1000),
        idle_scan_interval=_int_option(scanner, 'idle_scan_interval', 60 * 1000),
    )


def parse_broker_options(config: dict[str, Any]) -> BrokerOptions:
    broker = _table(config, 'broker')
    url = broker.get('url')
    if not isinstance(url, str) or not url:
        raise ConfigError("broker url must be given")
    scheme = urlparse(url).scheme
    if scheme not in BROKER_SCHEMES:
        raise ConfigError(f"unsupported broker url scheme '{scheme}' (expected one of {', '.join(BROKER_SCHEMES)})")

    qos = broker.get('qos', 0)
    if qos not in (0, 1, 2):
        raise ConfigError(f"invalid qos: {qos!r}")

    user = broker.get('user') or None
    password = broker.get('pass')
    client_id_prefix = broker.get('client_id_prefix', 'sertomqtt_')
    for key, value in (('user', user), ('pass', password), ('client_id_prefix', client_id_prefix)):
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"invalid broker {key}: must be a string")
    if user is not None and password is None:
        logger.warning("[MQTT] Broker user given without pass, connecting anonymously")

    return BrokerOptions(
        url=url,
        user=user,
        password=password,
        client_id_prefix=client_id_prefix,
        keepalive=_int_option(broker, 'keepalive', 60),
        qos=qos,
        tls_verify=bool(broker.get('tls_verify', True)),
        retry_delay=_int_option(broker, 'retry_delay', 3000, minimum=0),
        connect_timeout=_seconds_option(broker, 'connect_timeout', 10),
        ack_timeout=_seconds_option(broker, 'ack_timeout', 10),
    )


def load_bridge_options(config: dict[str, Any]) -> BridgeOptions:
    """Validate the merged configuration and build typed options."""
    general = _table(config, 'general')
    log_level = general.get('log_level', 'INFO')
    if not isinstance(log_level, str) or log_level.upper() not in LOG_LEVELS:
        raise ConfigError(f"invalid log_level: {log_level!r} (expected one of {', '.join(LOG_LEVELS)})")
    return BridgeOptions(
        scanner=parse_scanner_options(config),
        broker=parse_broker_options(config),
        log_level=log_level.upper(),
    )
