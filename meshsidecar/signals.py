"""Shutdown on SIGINT or SIGTERM."""

from __future__ import annotations

import logging
import os
import signal
import threading

log = logging.getLogger(__name__)


def shutdown_event() -> threading.Event:
    """Return an event that is set when SIGINT or SIGTERM arrives.

    A second signal during shutdown ends the process at once with exit code 1.
    """
    event = threading.Event()

    def _handle(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if not event.is_set():
            log.info('Received signal "%s"; beginning shutdown', name)
            event.set()
            return
        log.critical('Received signal "%s" during shutdown; exiting immediately', name)
        os._exit(1)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle)
    return event