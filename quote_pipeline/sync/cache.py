"""
Request cache: the client-resident replica.

Maps request id → ``CachedRecord`` tagged ``summary`` or ``full``.

Merge-on-refresh (``apply_summaries``):
  - no entry, or a summary entry → replaced by the incoming summary
  - full entry → only summary-shaped fields are patched on; products,
    history, attachments and stage payloads are kept
  - ids absent from the poll are retained
  - ids written after the poll was issued are skipped, so a poll in flight
    never regresses a newer write
  - a detail fetch issued before a poll but answered after it keeps the
    poll's shared fields on top

Writes (``put_full``) replace unconditionally.  Promotions (``promote``) are
sequenced per id: the response of the most recently *issued* fetch wins,
whatever order responses arrive in, and a write supersedes every fetch
issued before it.
"""

from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import dataclass
from typing import Iterable

from quote_pipeline.models.request import SUMMARY_FIELDS

SUMMARY = "summary"
FULL = "full"


@dataclass(frozen=True)
class CachedRecord:
    kind: str
    data: dict

    @property
    def is_full(self) -> bool:
        return self.kind == FULL


def summary_of(record: dict) -> dict:
    """Summary-shaped projection of a full record."""
    return {key: record[key] for key in SUMMARY_FIELDS if key in record}


def merge_summary(full: dict, summary: dict) -> dict:
    """Patch the shared fields of ``summary`` onto ``full``; everything else kept."""
    merged = dict(full)
    for key in SUMMARY_FIELDS:
        if key in summary:
            merged[key] = summary[key]
    return merged


class RequestCache:
    """Thread-safe id → CachedRecord map."""

    def __init__(self) -> None:
        self._records: dict[str, CachedRecord] = {}
        self._lock = threading.RLock()
        self._seq = itertools.count(1)
        # id → sequence number of the last write / promotion applied
        self._applied: dict[str, int] = {}
        # id → (sequence number, summary) of the last poll row applied
        self._polled: dict[str, tuple[int, dict]] = {}

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, rid: str) -> CachedRecord | None:
        with self._lock:
            return self._records.get(rid)

    def __contains__(self, rid) -> bool:
        with self._lock:
            return rid in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def snapshot(self) -> dict[str, CachedRecord]:
        """Deep copy of the cache, safe to hand to UI code."""
        with self._lock:
            return {
                rid: CachedRecord(rec.kind, copy.deepcopy(rec.data))
                for rid, rec in self._records.items()
            }

    def summaries(self) -> list[dict]:
        """Summary view of every entry, most recently updated first."""
        with self._lock:
            rows = [summary_of(rec.data) for rec in self._records.values()]
        return sorted(rows, key=lambda r: (r.get("updatedAt") or "", r.get("id") or ""), reverse=True)

    # ── Sequencing ───────────────────────────────────────────────────────

    def next_seq(self) -> int:
        """Issue a sequence number for a fetch or poll about to start."""
        with self._lock:
            return next(self._seq)

    # ── Mutations ────────────────────────────────────────────────────────

    def apply_summaries(self, summaries: Iterable[dict], issued_seq: int | None = None) -> list[str]:
        """Merge a poll result.  Returns the ids whose entry changed."""
        changed = []
        with self._lock:
            seq = issued_seq if issued_seq is not None else next(self._seq)
            for summary in summaries:
                rid = summary.get("id")
                if not rid:
                    continue
                if self._applied.get(rid, 0) > seq:
                    continue
                self._polled[rid] = (seq, dict(summary))
                current = self._records.get(rid)
                if current is not None and current.is_full:
                    new = CachedRecord(FULL, merge_summary(current.data, summary))
                else:
                    new = CachedRecord(SUMMARY, dict(summary))
                if new != current:
                    self._records[rid] = new
                    changed.append(rid)
        return changed

    def put_full(self, record: dict) -> None:
        """Authoritative write result: replaces the entry outright."""
        rid = record["id"]
        with self._lock:
            self._records[rid] = CachedRecord(FULL, dict(record))
            self._applied[rid] = next(self._seq)

    def promote(self, rid: str, record: dict, issued_seq: int) -> bool:
        """Store a fetched full record unless a newer fetch or write already landed.

        A poll issued after the fetch carries fresher shared fields; they are
        merged on top of the fetched record.
        """
        with self._lock:
            if self._applied.get(rid, 0) > issued_seq:
                return False
            data = dict(record)
            polled = self._polled.get(rid)
            if polled is not None and polled[0] > issued_seq:
                data = merge_summary(data, polled[1])
            self._records[rid] = CachedRecord(FULL, data)
            self._applied[rid] = issued_seq
            return True

    def remove(self, rid: str) -> bool:
        with self._lock:
            self._applied[rid] = next(self._seq)
            self._polled.pop(rid, None)
            return self._records.pop(rid, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._applied.clear()
            self._polled.clear()
