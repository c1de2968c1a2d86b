#!/usr/bin/env python3
"""Bridge serial ports to MQTT topics."""
from __future__ import annotations

__version__ = "1.0.0"

import argparse
import logging
import signal
import sys

from config_loader import load_config
from serialbridge import SerialMqttBridge
from serialbridge.options import ConfigError

# Initialize logging (console only) - level is adjusted after config load
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="sertomqtt", description="Bridge serial ports to MQTT topics")
    parser.add_argument("config", nargs="*", help="Path to TOML config file (can be given multiple times; overrides default config loading)")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args: argparse.Namespace = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logger.info("Tip: use --debug to enable verbose debug info")

    # Load config
    try:
        config = load_config(args.config or None)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read configuration: {e}")
        sys.exit(1)

    try:
        bridge = SerialMqttBridge(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    # Reconfigure log level from config
    log_level = getattr(logging, bridge.options.log_level, logging.INFO)
    if args.debug:
        log_level = logging.DEBUG
    logging.getLogger().setLevel(log_level)

    # Ensure signals from systemd (SIGTERM) and ctrl-c (SIGINT) are handled
    signal.signal(signal.SIGTERM, bridge.handle_signal)
    signal.signal(signal.SIGINT, bridge.handle_signal)

    bridge.run()


if __name__ == "__main__":
    main()
