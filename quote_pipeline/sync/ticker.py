"""
Poll schedulers.

``RequestSyncService`` never sleeps or spawns threads itself; it asks a
``Ticker`` to call it back every interval.  Production uses the
thread-backed ``IntervalTicker``; tests drive a manual ticker.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class Ticker(Protocol):
    @property
    def running(self) -> bool: ...

    def start(self, interval: float, callback: Callable[[], None]) -> None: ...

    def stop(self) -> None: ...


class IntervalTicker:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread.

    The first call happens one interval after ``start``.  A callback that
    raises is logged and the ticker keeps running.
    """

    def __init__(self, name: str = "request-sync-poll") -> None:
        self._name = name
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval: float, callback: Callable[[], None]) -> None:
        if self.running:
            return
        stop = threading.Event()
        self._stop = stop

        def _loop():
            while not stop.wait(interval):
                try:
                    callback()
                except Exception:
                    logger.exception("Ticker callback failed")

        self._thread = threading.Thread(target=_loop, name=self._name, daemon=True)
        self._thread.start()
        logger.debug("Ticker started interval=%.1fs", interval)

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
