"""Server lifecycle state machine.

``STARTING -> RUNNING -> DRAINING -> STOPPED`` for a graceful shutdown and
``RUNNING -> STOPPED`` for a forced one. Transitions are requested from
signal handlers or other threads; the event loop polls :attr:`state` and
does the actual socket work.
"""

from __future__ import annotations

import errno
import threading
from enum import Enum


class BindError(OSError):
    """Raised when the listening socket cannot be bound."""

    def __init__(self, host: str, port: int, cause: OSError) -> None:
        super().__init__(cause.errno, cause.strerror)
        self.host = host
        self.port = port

    @property
    def address_in_use(self) -> bool:
        return self.errno == errno.EADDRINUSE

    def __str__(self) -> str:
        return f"cannot bind {self.host}:{self.port}: {self.strerror or 'unknown error'}"


class LifecycleState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ServerLifecycle:
    def __init__(self) -> None:
        # re-entrant: signal handlers run on the main thread, possibly mid-transition
        self._lock = threading.RLock()
        self._state = LifecycleState.STARTING
        self._stopped = threading.Event()

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state is LifecycleState.RUNNING

    def mark_running(self) -> None:
        with self._lock:
            if self._state is LifecycleState.STARTING:
                self._state = LifecycleState.RUNNING

    def begin_draining(self) -> bool:
        """Stop accepting and let in-flight responses finish."""
        with self._lock:
            if self._state not in {LifecycleState.STARTING, LifecycleState.RUNNING}:
                return False
            self._state = LifecycleState.DRAINING
            return True

    def force_stop(self) -> bool:
        """Skip draining; open connections are dropped."""
        with self._lock:
            if self._state is LifecycleState.STOPPED:
                return False
            self._state = LifecycleState.STOPPED
            return True

    def mark_stopped(self) -> None:
        with self._lock:
            self._state = LifecycleState.STOPPED
        self._stopped.set()

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)
