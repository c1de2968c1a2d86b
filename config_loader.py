"""Configuration loading: TOML parsing and deep merging of overlays."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/sertomqtt/config.toml'
DEFAULT_CONFIG_DIR = '/etc/sertomqtt/config.d'


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts. override values take precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_toml(path: str | Path) -> dict[str, Any]:
    """Load a single TOML file and return its contents as a dict."""
    with open(path, 'rb') as f:
        return tomllib.load(f)


def _load_config_dir(config: dict[str, Any], config_d: Path) -> dict[str, Any]:
    """Load all *.toml files from a config.d directory as overlays."""
    if not config_d.is_dir():
        return config
    for override_file in sorted(config_d.glob('*.toml')):
        logger.info(f"Loading config override: {override_file}")
        config = deep_merge(config, _load_toml(override_file))
    return config


def load_config(config_paths: list[str] | None = None) -> dict[str, Any]:
    """Load and merge TOML configuration.

    When no config paths are provided (default):
      1. Load base config from /etc/sertomqtt/config.toml
      2. Overlay files from /etc/sertomqtt/config.d/*.toml (alphabetical)

    When config paths are provided:
      Load only those files in order, each overlaying the previous.
      Default search paths and config.d directories are skipped.
    """
    if config_paths:
        config: dict = {}
        for path in config_paths:
            if not os.path.exists(path):
                logger.error(f"Config file not found: {path}")
                continue
            logger.info(f"Loading config: {path}")
            config = deep_merge(config, _load_toml(path))
        return config

    # Default: load system config
    config = {}
    if os.path.exists(DEFAULT_CONFIG_PATH):
        config = _load_toml(DEFAULT_CONFIG_PATH)
        logger.info(f"Loaded base config from {DEFAULT_CONFIG_PATH}")
    else:
        logger.warning(f"Base config not found at {DEFAULT_CONFIG_PATH}, using defaults")

    # Load drop-in overrides
    config = _load_config_dir(config, Path(DEFAULT_CONFIG_DIR))

    return config


def log_config_sources(config: dict[str, Any]) -> None:
    """Log configuration summary."""
    broker = config.get('broker', {})
    scanner = config.get('scanner', {})
    ports = config.get('ports', {})

    logger.info(f"Broker: {broker.get('url', 'unknown')}")
    logger.info(f"Serial ports configured: {len(ports)} (expected: {scanner.get('expected_ports', 1)})")

    for path, port in ports.items():
        node = port.get('node', '')
        prefix = port.get('topic_prefix', '')
        delimiter = port.get('delimiter')
        logger.debug(f"  [{path}] node={node!r} topic_prefix={prefix!r} delimiter={delimiter!r} "
                     f"baud_rate={port.get('baud_rate', 115200)}")
