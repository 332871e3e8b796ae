"""
History ledger tests: pure, no database:
  - append-only, insertion order independent of timestamps
  - current stage ignores ``edited`` markers
  - stored-shape parsing (legacy timestamp keys, unusable rows)
  - stored rows survive appends untouched
  - clarification loop counting
"""

import copy
from datetime import datetime, timedelta, timezone

import pytest

from quote_pipeline.services.history_ledger import (
    HistoryEntry,
    HistoryLedger,
    append_row,
    filter_lifecycle,
    make_entry,
    submit_after_clarification_count,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _ledger(*statuses):
    ledger = HistoryLedger()
    for i, status in enumerate(statuses):
        ledger = ledger.append(make_entry(status, "u-1", "Alice", now=T0 + timedelta(minutes=i)))
    return ledger


class TestAppend:
    def test_append_returns_new_ledger(self):
        empty = HistoryLedger()
        one = empty.append(make_entry("submitted", "u-1", "Alice", now=T0))
        assert len(empty) == 0
        assert len(one) == 1
        assert one[-1].status == "submitted"

    def test_order_is_insertion_not_timestamp(self):
        later = make_entry("submitted", "u-1", "Alice", now=T0 + timedelta(days=1))
        earlier = make_entry("under_review", "u-2", "Bob", now=T0)
        ledger = HistoryLedger().append(later).append(earlier)
        assert [e.status for e in ledger] == ["submitted", "under_review"]
        assert ledger.current_stage() == "under_review"

    def test_entries_are_immutable(self):
        entry = make_entry("submitted", "u-1", "Alice", now=T0)
        with pytest.raises(AttributeError):
            entry.status = "closed"

    def test_empty_comment_is_dropped(self):
        entry = make_entry("submitted", "u-1", "Alice", "", now=T0)
        assert entry.comment is None
        assert "comment" not in entry.to_dict()


class TestCurrentStage:
    def test_empty_ledger_has_no_stage(self):
        assert HistoryLedger().current_stage() is None

    def test_edited_markers_are_skipped(self):
        ledger = _ledger("submitted", "under_review", "edited", "edited")
        assert ledger[-1].status == "edited"
        assert ledger.current_stage() == "under_review"

    def test_only_edits_means_no_stage(self):
        assert _ledger("edited").current_stage() is None

    def test_filter_lifecycle(self):
        ledger = _ledger("submitted", "edited", "clarification_needed")
        assert [e.status for e in filter_lifecycle(ledger)] == ["submitted", "clarification_needed"]

    def test_last_entry_matching(self):
        ledger = _ledger("submitted", "clarification_needed", "submitted", "under_review")
        assert ledger.last_entry_matching({"submitted"}) is ledger[2]
        assert ledger.last_entry_matching({"closed"}) is None


class TestStoredShape:
    def test_round_trip_keeps_fields(self):
        entry = make_entry("clarification_needed", "u-2", "Bob", "need tyre size", now=T0)
        restored = HistoryEntry.from_dict(entry.to_dict())
        assert restored == entry

    def test_legacy_timestamp_keys(self):
        row = {"id": "h-1", "status": "submitted", "ts": "2026-03-02T09:00:00Z", "userId": "u-1"}
        entry = HistoryEntry.from_dict(row)
        assert entry.timestamp == "2026-03-02T09:00:00+00:00"
        assert entry.user_id == "u-1"
        assert entry.user_name == ""

    def test_unusable_rows_are_dropped(self):
        ledger = HistoryLedger.from_list([
            {"status": "submitted", "timestamp": "2026-03-02T09:00:00Z"},
            {"status": ""},
            "garbage",
            None,
        ])
        assert len(ledger) == 1
        assert ledger[0].id.startswith("h-")

    def test_non_list_input_is_empty(self):
        assert len(HistoryLedger.from_list(None)) == 0
        assert len(HistoryLedger.from_list({"status": "submitted"})) == 0


class TestStoredRows:
    def test_existing_rows_survive_append_unchanged(self):
        rows = [
            {"status": "submitted", "ts": "2026-03-02T09:00:00Z"},
            {"id": "h-odd", "status": ""},
            {"id": "h-2", "status": "under_review", "timestamp": "2026-03-02T10:00:00+00:00", "userId": "u-2"},
        ]
        before = copy.deepcopy(rows)
        entry = make_entry("in_costing", "u-3", "Carol", now=T0)

        appended = append_row(rows, entry)

        assert appended[:3] == before
        assert appended[3] == entry.to_dict()
        assert rows == before

    def test_missing_history_starts_a_list(self):
        entry = make_entry("submitted", "u-1", "Alice", now=T0)
        assert append_row(None, entry) == [entry.to_dict()]
        assert append_row({"status": "x"}, entry) == [entry.to_dict()]


class TestLoops:
    def test_resubmission_loops(self):
        ledger = _ledger(
            "submitted", "clarification_needed", "submitted",
            "clarification_needed", "edited", "submitted",
        )
        assert submit_after_clarification_count(ledger) == 2

    def test_no_clarification_no_loops(self):
        assert submit_after_clarification_count(_ledger("submitted", "under_review")) == 0
