"""
Reporting projections over request history.

Read-only views computed from the stored aggregate documents:

    - performance_overview: throughput, work in progress and end-to-end
      lead time for a date range, with a per-interval series
    - status_integrity_report: requests whose ``status`` disagrees with the
      latest lifecycle ledger entry, and requests resubmitted after
      clarification more than once

The ``*_from_records`` functions are pure and take ``{id, status, updatedAt,
history}`` dicts; the wrappers load them from the database.
"""

import calendar
from datetime import datetime, timedelta

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.models import db
from quote_pipeline.models.request import COMPLETED_STATUSES, REQUEST_STATUSES, CustomerRequest
from quote_pipeline.services.history_ledger import (
    HistoryLedger,
    filter_lifecycle,
    submit_after_clarification_count,
)
from quote_pipeline.services.request_lifecycle import status_consistent
from quote_pipeline.utils.helpers import parse_datetime, to_iso, utcnow

GROUP_BY_OPTIONS = ("day", "week", "month")
INTEGRITY_DEFAULT_LIMIT = 100
INTEGRITY_MAX_LIMIT = 500


def quantile(values, p: float) -> float:
    """Linear-interpolated quantile; 0 for an empty sample."""
    if not values:
        return 0
    ordered = sorted(values)
    idx = (len(ordered) - 1) * p
    lo, hi = int(idx), min(int(idx) + 1, len(ordered) - 1)
    if lo == hi or idx == lo:
        return ordered[lo]
    weight = idx - lo
    return ordered[lo] * (1 - weight) + ordered[hi] * weight


def _timeline(history) -> list[tuple[str, datetime]]:
    """(status, timestamp) lifecycle pairs in ledger order.

    ``edited`` markers and rows without a parseable timestamp are dropped.
    """
    out = []
    for entry in filter_lifecycle(HistoryLedger.from_list(history)):
        ts = parse_datetime(entry.timestamp)
        if ts is not None:
            out.append((entry.status, ts))
    return out


def _first_time(timeline, statuses) -> datetime | None:
    for status, ts in timeline:
        if status in statuses:
            return ts
    return None


def _status_at(timeline, at: datetime) -> str | None:
    status = None
    for entry_status, ts in timeline:
        if ts > at:
            break
        status = entry_status
    return status


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _step(value: datetime, group_by: str) -> datetime:
    if group_by == "week":
        return value + timedelta(days=7)
    if group_by == "month":
        return _add_months(value, 1)
    return value + timedelta(days=1)


def parse_range(raw_from, raw_to, raw_group_by=None) -> tuple[datetime, datetime, str]:
    """Validate query parameters; ValidationError when the range is unusable."""
    start = parse_datetime(raw_from)
    end = parse_datetime(raw_to)
    if start is None or end is None or start > end:
        raise ValidationError("Invalid query: expected from/to ISO dates (from <= to)", field="from")
    group_by = raw_group_by if raw_group_by in GROUP_BY_OPTIONS else "day"
    return start, end, group_by


# ═════════════════════════════════════════════════════════════════════════════
# Performance overview
# ═════════════════════════════════════════════════════════════════════════════

def performance_overview_from_records(records, start: datetime, end: datetime, group_by: str = "day") -> dict:
    """
    Submitted/completed counts use each request's *first* ``submitted`` and
    first completed (``gm_approved``/``closed``) entry.  A GM rejection is not
    completion.  WIP counts current statuses other than draft and completed.
    """
    items = []
    for record in records:
        timeline = _timeline(record.get("history"))
        items.append({
            "status": record.get("status") or "",
            "timeline": timeline,
            "submitted_at": _first_time(timeline, {"submitted"}),
            "completed_at": _first_time(timeline, COMPLETED_STATUSES),
        })

    def in_range(ts, lo, hi):
        return ts is not None and lo <= ts <= hi

    e2e = []
    for item in items:
        s, c = item["submitted_at"], item["completed_at"]
        if s is None or c is None:
            continue
        hours = (c - s).total_seconds() / 3600
        if hours >= 0:
            e2e.append((c, hours))

    in_range_hours = [hours for ended, hours in e2e if in_range(ended, start, end)]
    overview = {
        "submittedCount": sum(1 for i in items if in_range(i["submitted_at"], start, end)),
        "completedCount": sum(1 for i in items if in_range(i["completed_at"], start, end)),
        "wipCount": sum(
            1 for i in items if i["status"] != "draft" and i["status"] not in COMPLETED_STATUSES
        ),
        "e2eMedian": round(quantile(in_range_hours, 0.5), 1),
        "e2eP90": round(quantile(in_range_hours, 0.9), 1),
        "e2eSamples": len(in_range_hours),
    }

    starts = []
    cursor = start
    while cursor <= end:
        starts.append(cursor)
        cursor = _step(cursor, group_by)

    series = {"labels": [], "submitted": [], "completed": [], "wip": [], "e2eMedian": []}
    for index, lo in enumerate(starts):
        hi = starts[index + 1] - timedelta(microseconds=1) if index + 1 < len(starts) else end
        hi = min(hi, end)
        series["labels"].append(to_iso(lo))
        series["submitted"].append(sum(1 for i in items if in_range(i["submitted_at"], lo, hi)))
        series["completed"].append(sum(1 for i in items if in_range(i["completed_at"], lo, hi)))
        wip = 0
        for item in items:
            status_then = _status_at(item["timeline"], hi)
            if status_then and status_then != "draft" and status_then not in COMPLETED_STATUSES:
                wip += 1
        series["wip"].append(wip)
        interval_hours = [hours for ended, hours in e2e if in_range(ended, lo, hi)]
        series["e2eMedian"].append(round(quantile(interval_hours, 0.5), 1))

    return {"groupBy": group_by, "overview": overview, "series": series}


def performance_overview(start: datetime, end: datetime, group_by: str = "day") -> dict:
    return performance_overview_from_records(_load_records(), start, end, group_by)


# ═════════════════════════════════════════════════════════════════════════════
# Status integrity
# ═════════════════════════════════════════════════════════════════════════════

def clamp_integrity_limit(raw) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return INTEGRITY_DEFAULT_LIMIT
    return max(1, min(INTEGRITY_MAX_LIMIT, value))


def status_integrity_from_records(records, limit=INTEGRITY_DEFAULT_LIMIT, *, now=None) -> dict:
    mismatches = []
    repeated = []
    for record in records:
        ledger = HistoryLedger.from_list(record.get("history"))
        current = record.get("status") or ""
        if not status_consistent(record):
            latest = ledger.last_entry_matching(REQUEST_STATUSES)
            mismatches.append({
                "id": record.get("id"),
                "currentStatus": current,
                "latestHistoryStatus": latest.status if latest else None,
                "latestHistoryAt": latest.timestamp if latest else None,
                "updatedAt": record.get("updatedAt"),
            })
        loops = submit_after_clarification_count(ledger)
        if loops > 1:
            repeated.append({
                "id": record.get("id"),
                "submitAfterClarificationCount": loops,
                "currentStatus": current,
                "updatedAt": record.get("updatedAt"),
            })

    max_rows = clamp_integrity_limit(limit)
    return {
        "generatedAt": to_iso(now or utcnow()),
        "totalRequests": len(records),
        "mismatchCount": len(mismatches),
        "repeatedSubmitLoopCount": len(repeated),
        "mismatches": mismatches[:max_rows],
        "repeatedSubmitLoops": repeated[:max_rows],
    }


def status_integrity_report(limit=INTEGRITY_DEFAULT_LIMIT) -> dict:
    return status_integrity_from_records(_load_records(), limit)


def _load_records() -> list[dict]:
    rows = db.session.query(CustomerRequest).order_by(CustomerRequest.updated_at.desc()).all()
    return [
        {
            "id": row.id,
            "status": row.status,
            "updatedAt": to_iso(row.updated_at),
            "history": (row.data or {}).get("history") or [],
        }
        for row in rows
    ]
