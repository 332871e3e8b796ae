"""
Debounced, abortable search-as-you-type.

Each ``set_query`` bumps a generation counter, cancels the pending debounce
timer and sets the cancel event of the request in flight.  A response is
delivered only if its generation is still current, so a slow response for
an old query can never overwrite the results of a newer one.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from quote_pipeline.core.exceptions import NetworkAbortedError

logger = logging.getLogger(__name__)

SearchFetch = Callable[[str, int, threading.Event], list]


class DebouncedSearch:
    """Args:
        fetch: ``fetch(query, limit, cancel_event) -> list[dict]``.
        delay: Seconds of quiet before the query is sent.
        limit: Maximum number of results requested.
        on_results: ``on_results(query, results)`` for every delivered response.
        on_error: ``on_error(query, exc)`` for failures other than cancellation.
        timer_factory: ``threading.Timer``-compatible factory; tests inject a
            manual timer.
    """

    def __init__(
        self,
        fetch: SearchFetch,
        *,
        delay: float = 0.3,
        limit: int = 20,
        on_results: Callable[[str, list], None] | None = None,
        on_error: Callable[[str, Exception], None] | None = None,
        timer_factory=threading.Timer,
    ) -> None:
        self._fetch = fetch
        self.delay = delay
        self.limit = limit
        self._on_results = on_results
        self._on_error = on_error
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._generation = 0
        self._timer = None
        self._inflight: threading.Event | None = None
        self._query = ""
        self._results: list = []

    @property
    def query(self) -> str:
        return self._query

    @property
    def results(self) -> list:
        with self._lock:
            return list(self._results)

    def set_query(self, query: str | None) -> None:
        query = (query or "").strip()
        with self._lock:
            gen = self._abort_locked()
            self._query = query
            if not query:
                self._results = []
            else:
                timer = self._timer_factory(self.delay, self._run, args=(gen, query))
                timer.daemon = True
                self._timer = timer
        if not query:
            self._deliver(query, [])
            return
        timer.start()

    def cancel(self) -> None:
        """Drop the pending query and abort the request in flight."""
        with self._lock:
            self._abort_locked()

    def _abort_locked(self) -> int:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._inflight is not None:
            self._inflight.set()
            self._inflight = None
        return self._generation

    def _run(self, gen: int, query: str) -> None:
        with self._lock:
            if gen != self._generation:
                return
            self._timer = None
            cancel_event = threading.Event()
            self._inflight = cancel_event

        try:
            results = self._fetch(query, self.limit, cancel_event)
        except NetworkAbortedError:
            logger.debug("Search aborted q=%r", query)
            return
        except Exception as exc:
            with self._lock:
                if gen != self._generation:
                    return
                self._inflight = None
            logger.warning("Search failed q=%r error=%s", query, exc)
            if self._on_error is not None:
                self._on_error(query, exc)
            return

        with self._lock:
            if gen != self._generation or cancel_event.is_set():
                return
            self._inflight = None
            self._results = list(results or [])
        self._deliver(query, results or [])

    def _deliver(self, query: str, results: list) -> None:
        if self._on_results is not None:
            self._on_results(query, list(results))
