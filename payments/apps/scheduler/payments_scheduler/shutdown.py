"""Process-wide shutdown signal shared by every loop thread."""

import logging
import signal
import threading

logger = logging.getLogger(__name__)

shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
    shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers (main thread only)."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)
