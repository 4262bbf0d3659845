"""Connectivity gate.

The host application owns network observation and reports it through
``set_online_status``. The gate only decides whether new remote calls are
attempted; it never tests the network itself and never interrupts a call that is
already in flight.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityGate:
    """Thread-safe online/offline flag with transition listeners."""

    def __init__(self, online: bool = True):
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    @property
    def is_open(self) -> bool:
        return self._online

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with the new state on every transition."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_online_status(self, online: bool) -> bool:
        """Update the flag. Returns True if the state changed."""
        online = bool(online)
        with self._lock:
            changed = online != self._online
            self._online = online
            listeners = list(self._listeners)

        if not changed:
            return False

        logger.info("Connectivity gate %s", "opened" if online else "closed")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)
        return True
