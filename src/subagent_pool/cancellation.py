"""Shared cancellation signal for batch and steer runs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

CancelListener = Callable[[], None]


class CancellationToken:
    """Idempotent cancellation flag with attachable listeners.

    Listeners run once, on the thread that calls cancel(). A listener added
    after cancellation runs immediately on the adding thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[CancelListener] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener raised exception")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def add_listener(self, listener: CancelListener) -> Callable[[], None]:
        """Attach a listener; returns a callable that detaches it."""
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._listeners.append(listener)

        if fire_now:
            listener()

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove
