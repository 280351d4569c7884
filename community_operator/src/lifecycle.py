from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from typing import Protocol

from community_operator.src.errors import ManagerRuntimeError

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

LOGGER = logging.getLogger(__name__)


class StartableManager(Protocol):
    def start(self, stop_event: threading.Event) -> None: ...


def setup_signal_handler(exit_fn: Callable[[int], object] = os._exit) -> threading.Event:
    """Return an event that is set on the first SIGINT/SIGTERM.

    A second signal terminates the process immediately with status 1.
    Must be called from the main thread.
    """
    stop_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        if stop_event.is_set():
            LOGGER.error("Received second signal %d, exiting immediately", signum)
            exit_fn(1)
            return
        LOGGER.info("Received signal %d, shutting down", signum)
        stop_event.set()

    for signum in SHUTDOWN_SIGNALS:
        signal.signal(signum, _handle_signal)
    return stop_event


def run_manager(
    manager: StartableManager,
    stop_event: threading.Event,
    logger: logging.Logger | None = None,
) -> int:
    """Run *manager* until *stop_event* fires; return the process exit status."""
    log = logger or LOGGER
    log.info("Starting the manager")
    try:
        manager.start(stop_event)
    except ManagerRuntimeError as exc:
        log.error("Operator failed at stage %s: %s", exc.stage, exc)
        return 1
    log.info("Manager stopped")
    return 0
