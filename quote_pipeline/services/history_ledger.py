"""
History Ledger: append-only audit trail of a request.

Entries are immutable once appended.  Ordering is insertion order: timestamps
are recorded but never used to sort, so client clock skew cannot reorder the
trail.

Lifecycle entries carry a real status; ``edited`` entries are side-channel
audit notes and never represent a transition.  Consumers that need the
"current stage" must go through ``current_stage`` rather than reading the
last raw entry.

Stored rows are never rewritten: ``append_row`` adds the new entry to the
stored list and leaves every existing row exactly as it was.  Parsing into
``HistoryLedger`` is for reads only.

Usage:
    from quote_pipeline.services.history_ledger import HistoryLedger, append_row, make_entry

    entry = make_entry("submitted", "u-1", "Alice")
    request_data["history"] = append_row(request_data.get("history"), entry)
    stage = HistoryLedger.from_list(request_data["history"]).current_stage()
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable, Iterator

from quote_pipeline.models.request import EDITED
from quote_pipeline.utils.helpers import parse_datetime, to_iso, utcnow


@dataclass(frozen=True)
class HistoryEntry:
    """One ledger entry.  ``status`` may be ``edited`` (audit marker)."""

    id: str
    status: str
    timestamp: str
    user_id: str = ""
    user_name: str = ""
    comment: str | None = None

    @property
    def is_lifecycle(self) -> bool:
        return self.status != EDITED

    @classmethod
    def from_dict(cls, raw: dict) -> HistoryEntry | None:
        """Build from the stored camelCase shape; None for unusable rows."""
        if not isinstance(raw, dict):
            return None
        status = str(raw.get("status") or "").strip()
        if not status:
            return None
        # Older rows used ts/time for the timestamp key.
        stamp = raw.get("timestamp") or raw.get("ts") or raw.get("time")
        parsed = parse_datetime(stamp)
        comment = raw.get("comment")
        return cls(
            id=str(raw.get("id") or f"h-{uuid.uuid4().hex}"),
            status=status,
            timestamp=to_iso(parsed) if parsed else str(stamp or ""),
            user_id=str(raw.get("userId") or ""),
            user_name=str(raw.get("userName") or ""),
            comment=comment if isinstance(comment, str) else None,
        )

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "status": self.status,
            "timestamp": self.timestamp,
            "userId": self.user_id,
            "userName": self.user_name,
        }
        if self.comment is not None:
            out["comment"] = self.comment
        return out


def make_entry(
    status: str,
    user_id: str,
    user_name: str,
    comment: str | None = None,
    *,
    now=None,
) -> HistoryEntry:
    """Create a fresh entry stamped with ``now`` (UTC)."""
    return HistoryEntry(
        id=f"h-{uuid.uuid4().hex}",
        status=status,
        timestamp=to_iso(now or utcnow()),
        user_id=user_id or "",
        user_name=user_name or "",
        comment=comment or None,
    )


class HistoryLedger:
    """Immutable ordered sequence of HistoryEntry values."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[HistoryEntry] = ()) -> None:
        self._entries = tuple(entries)

    @classmethod
    def from_list(cls, raw: Iterable[dict] | None) -> HistoryLedger:
        if not isinstance(raw, (list, tuple)):
            return cls()
        parsed = (HistoryEntry.from_dict(item) for item in raw)
        return cls(entry for entry in parsed if entry is not None)

    # ── Sequence protocol ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self._entries)

    def __getitem__(self, index):
        return self._entries[index]

    def __eq__(self, other) -> bool:
        return isinstance(other, HistoryLedger) and self._entries == other._entries

    def __repr__(self) -> str:
        return f"<HistoryLedger {len(self._entries)} entries>"

    # ── Operations ───────────────────────────────────────────────────────

    def append(self, entry: HistoryEntry) -> HistoryLedger:
        """Return a new ledger with ``entry`` at the end."""
        return HistoryLedger(self._entries + (entry,))

    def last_entry_matching(self, statuses: Iterable[str]) -> HistoryEntry | None:
        """Most recent entry whose status is in ``statuses``, or None."""
        wanted = set(statuses)
        for entry in reversed(self._entries):
            if entry.status in wanted:
                return entry
        return None

    def current_stage(self) -> str | None:
        """Status of the most recent lifecycle entry (``edited`` excluded)."""
        for entry in reversed(self._entries):
            if entry.is_lifecycle:
                return entry.status
        return None


def filter_lifecycle(entries: Iterable[HistoryEntry]) -> list[HistoryEntry]:
    """Strip ``edited`` markers.  For display; never used for the status invariant."""
    return [entry for entry in entries if entry.is_lifecycle]


def submit_after_clarification_count(entries: Iterable[HistoryEntry]) -> int:
    """Number of ``submitted`` entries that follow a clarification request."""
    clarification_seen = 0
    resubmitted = 0
    for entry in entries:
        if entry.status == "clarification_needed":
            clarification_seen += 1
        elif entry.status == "submitted" and clarification_seen > 0:
            resubmitted += 1
    return resubmitted


def append_row(raw, entry: HistoryEntry) -> list[dict]:
    """Stored history with ``entry`` added; existing rows are copied untouched."""
    rows = list(raw) if isinstance(raw, (list, tuple)) else []
    rows.append(entry.to_dict())
    return rows
