"""
Request synchronization service.

Owns the request cache, the poll loop and the write path for one principal.
Nothing here is module-level state: construct a ``RequestSyncService`` per
session, call ``start()`` and drive polling with ``set_visible()``.

    settings = SyncSettings.from_mapping(app.config)
    service = RequestSyncService.connect(base_url, principal, settings=settings)
    service.start()
    service.set_visible(True)        # polls now, then every 30 s
    record = service.get_full("CRA26101701")
    record = service.transition("CRA26101701", action="submit")
    service.stop()

Writes replace the cached entry with the server's full record.  Polls only
patch summary fields onto full entries (see ``cache.merge_summary``).
"""

from __future__ import annotations

import copy
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from quote_pipeline.core.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    SyncStaleError,
    ValidationError,
)
from quote_pipeline.sync.cache import RequestCache
from quote_pipeline.sync.gateway import RequestGateway
from quote_pipeline.sync.search import DebouncedSearch
from quote_pipeline.sync.ticker import IntervalTicker, Ticker
from quote_pipeline.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_REMOTE_ERRORS = (GatewayError, NotFoundError, ForbiddenError, InvalidTransitionError, ValidationError)


class SyncState(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class SyncSettings:
    poll_interval: float = 30.0
    search_debounce: float = 0.3
    search_limit: int = 20
    gateway_timeout: float = 15.0

    @classmethod
    def from_mapping(cls, mapping) -> "SyncSettings":
        """Build from a Flask config (or any mapping) using the app's keys."""
        return cls(
            poll_interval=float(mapping.get("SYNC_POLL_INTERVAL_SECONDS", cls.poll_interval)),
            search_debounce=float(mapping.get("SEARCH_DEBOUNCE_SECONDS", cls.search_debounce)),
            search_limit=int(mapping.get("SEARCH_DEFAULT_LIMIT", cls.search_limit)),
            gateway_timeout=float(mapping.get("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout)),
        )


class RequestSyncService:
    def __init__(
        self,
        gateway,
        *,
        ticker: Ticker | None = None,
        clock: Callable[[], datetime] = utcnow,
        settings: SyncSettings | None = None,
        cache: RequestCache | None = None,
    ) -> None:
        self.gateway = gateway
        self.ticker = ticker if ticker is not None else IntervalTicker()
        self.clock = clock
        self.settings = settings or SyncSettings()
        self.cache = cache if cache is not None else RequestCache()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[list[str]], None]] = []
        self._started = False
        self._visible = False
        self._sync_state = SyncState.IDLE
        self._last_synced_at: datetime | None = None
        self._sync_error: Exception | None = None

    @classmethod
    def connect(cls, base_url: str, principal, *, settings: SyncSettings | None = None, session=None, **kwargs):
        """Service over a fresh ``RequestGateway`` using the configured timeout."""
        settings = settings or SyncSettings()
        gateway = RequestGateway(base_url, principal, session=session, timeout=settings.gateway_timeout)
        return cls(gateway, settings=settings, **kwargs)

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._started

    @property
    def polling(self) -> bool:
        return self.ticker.running

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Request sync started visible=%s", self._visible)
        if self._visible:
            self._begin_polling()

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.ticker.stop()
        logger.info("Request sync stopped")

    def set_visible(self, visible: bool) -> None:
        """Poll only while the view is visible; becoming visible polls at once."""
        visible = bool(visible)
        if visible == self._visible:
            return
        self._visible = visible
        if not self._started:
            return
        if visible:
            self._begin_polling()
        else:
            self.ticker.stop()

    def _begin_polling(self) -> None:
        self.poll_once()
        self.ticker.start(self.settings.poll_interval, self.poll_once)

    # ── Sync status ──────────────────────────────────────────────────────

    @property
    def sync_state(self) -> SyncState:
        return self._sync_state

    @property
    def last_synced_at(self) -> datetime | None:
        return self._last_synced_at

    @property
    def sync_error(self) -> Exception | None:
        return self._sync_error

    def subscribe(self, listener: Callable[[list[str]], None]) -> Callable[[], None]:
        """Register ``listener(changed_ids)``; returns the unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, changed: list[str]) -> None:
        if not changed:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(list(changed))
            except Exception:
                logger.exception("Sync listener failed")

    # ── Poll ─────────────────────────────────────────────────────────────

    def _mark_stale(self, exc: Exception) -> None:
        self._sync_state = SyncState.ERROR
        self._sync_error = SyncStaleError(self._last_synced_at, cause=exc)

    def poll_once(self) -> bool:
        """Fetch every summary and merge it into the cache.

        Returns False on failure; the cache and ``last_synced_at`` are kept.
        """
        issued = self.cache.next_seq()
        self._sync_state = SyncState.SYNCING
        try:
            summaries = self.gateway.list_summaries()
            if not isinstance(summaries, list):
                raise GatewayError(
                    f"Summary list expected, got {type(summaries).__name__}",
                )
            changed = self.cache.apply_summaries(summaries, issued_seq=issued)
        except _REMOTE_ERRORS as exc:
            self._mark_stale(exc)
            logger.warning("Request poll failed error=%s last_synced_at=%s", exc, self._last_synced_at)
            return False
        except Exception as exc:
            self._mark_stale(exc)
            logger.exception("Request poll failed unexpectedly last_synced_at=%s", self._last_synced_at)
            return False

        self._last_synced_at = self.clock()
        self._sync_state = SyncState.OK
        self._sync_error = None
        logger.debug("Request poll merged count=%d changed=%d", len(summaries), len(changed))
        self._notify(changed)
        return True

    # ── Reads ────────────────────────────────────────────────────────────

    def summaries(self) -> list[dict]:
        return self.cache.summaries()

    def get_cached(self, rid: str) -> dict | None:
        entry = self.cache.get(rid)
        return copy.deepcopy(entry.data) if entry is not None else None

    def get_full(self, rid: str) -> dict | None:
        """Promote ``rid`` to a full record.  Returns None if the fetch fails."""
        entry = self.cache.get(rid)
        issued = self.cache.next_seq()
        try:
            record = self.gateway.get_full(rid)
        except _REMOTE_ERRORS as exc:
            logger.info("Full fetch failed id=%s error=%s", rid, exc)
            return None
        if record is None:
            return None

        promoted = self.cache.promote(rid, record, issued)
        # Either the promoted record (with any fresher poll fields merged on)
        # or whatever a newer fetch or write left behind.
        current = self.cache.get(rid)
        if promoted and current is not None and current != entry:
            self._notify([rid])
        return copy.deepcopy(current.data) if current is not None else None

    # ── Writes ───────────────────────────────────────────────────────────

    def _write(self, op: str, call: Callable[[], dict]) -> dict:
        try:
            record = call()
        except _REMOTE_ERRORS as exc:
            self._sync_error = exc
            logger.warning("Request %s failed error=%s", op, exc)
            raise
        self.cache.put_full(record)
        self._sync_error = None
        self._notify([record["id"]])
        return copy.deepcopy(record)

    def create(self, body: dict) -> dict:
        return self._write("create", lambda: self.gateway.create(body))

    def update(self, rid: str, body: dict) -> dict:
        return self._write("update", lambda: self.gateway.update(rid, body))

    def transition(
        self,
        rid: str,
        *,
        action: str | None = None,
        status: str | None = None,
        comment: str | None = None,
        payload: dict | None = None,
    ) -> dict:
        return self._write(
            "transition",
            lambda: self.gateway.transition(rid, action=action, status=status, comment=comment, payload=payload),
        )

    def delete(self, rid: str) -> None:
        try:
            self.gateway.delete(rid)
        except _REMOTE_ERRORS as exc:
            self._sync_error = exc
            logger.warning("Request delete failed id=%s error=%s", rid, exc)
            raise
        if self.cache.remove(rid):
            self._notify([rid])

    # ── Search ───────────────────────────────────────────────────────────

    def make_search(self, on_results=None, on_error=None, *, timer_factory=threading.Timer) -> DebouncedSearch:
        return DebouncedSearch(
            lambda q, limit, cancel_event: self.gateway.search(q, limit, cancel_event=cancel_event),
            delay=self.settings.search_debounce,
            limit=self.settings.search_limit,
            on_results=on_results,
            on_error=on_error,
            timer_factory=timer_factory,
        )
