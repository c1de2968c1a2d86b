"""Main run loop and shutdown orchestration."""
from __future__ import annotations

import logging
import threading
from typing import Any, TYPE_CHECKING

from config_loader import log_config_sources

if TYPE_CHECKING:
    from . import SerialMqttBridge

logger = logging.getLogger(__name__)


def handle_signal(app: SerialMqttBridge, signum: int, frame: Any) -> None:
    """Signal handler to trigger graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down...")
    app.should_exit = True
    app.scanner.stop()


def run(app: SerialMqttBridge) -> None:
    """Keep the broker session alive in the background and scan for ports until asked to exit."""
    log_config_sources(app.config)

    # Start connecting to the broker, and automatically keep reconnecting
    session_thread = threading.Thread(
        target=app.session.run,
        daemon=True,
        name="MQTT-Session"
    )
    session_thread.start()
    logger.info(f"[MQTT] Connecting to {app.options.broker.url}...")

    # Search for serial devices and bridge them; the scanner stays paused
    # until the broker session is up.
    try:
        if not app.should_exit:
            app.scanner.run()
    except KeyboardInterrupt:
        logger.info("Exiting...")
    except Exception as e:
        logger.exception(f"Unhandled error in scanner loop: {e}")
    finally:
        _cleanup(app, session_thread)


def _cleanup(app: SerialMqttBridge, session_thread: threading.Thread) -> None:
    """Close all ports, announce them closed, and drop the broker session."""
    logger.info("Cleaning up...")
    app.should_exit = True
    app.scanner.stop()

    app.bridge.shutdown()
    app.session.stop()

    if session_thread.is_alive():
        session_thread.join(timeout=5)
