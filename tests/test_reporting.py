"""
Reporting projection tests:
  - quantile interpolation
  - performance overview counts, lead times and per-interval series
  - status integrity report (mismatches, repeated clarification loops)
  - endpoint validation (from/to, groupBy, limit)
"""

from datetime import datetime, timezone

import pytest

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.services.reporting import (
    clamp_integrity_limit,
    parse_range,
    performance_overview_from_records,
    quantile,
    status_integrity_from_records,
)


def _ts(day, hour=0):
    return datetime(2026, 3, day, hour, tzinfo=timezone.utc).isoformat()


def _history(*pairs):
    return [
        {"id": f"h-{i}", "status": status, "timestamp": stamp, "userId": "u-1"}
        for i, (status, stamp) in enumerate(pairs)
    ]


RECORDS = [
    {"id": "A", "status": "gm_approved", "history": _history(
        ("submitted", _ts(1, 10)), ("gm_approved", _ts(2, 10)),
    )},
    {"id": "B", "status": "submitted", "history": _history(
        ("submitted", _ts(1, 12)), ("clarification_needed", _ts(2, 9)), ("submitted", _ts(3, 9)),
    )},
    {"id": "C", "status": "draft", "history": []},
    {"id": "D", "status": "closed", "history": _history(
        ("submitted", _ts(2, 8)), ("gm_approved", _ts(3, 20)), ("closed", _ts(4, 8)),
    )},
]

START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = datetime(2026, 3, 3, 23, 59, 59, tzinfo=timezone.utc)


class TestQuantile:
    def test_interpolation(self):
        assert quantile([1, 2, 3, 4], 0.5) == 2.5
        assert quantile([4, 1, 3, 2], 0.9) == pytest.approx(3.7)
        assert quantile([7], 0.9) == 7

    def test_empty_sample(self):
        assert quantile([], 0.5) == 0


class TestPerformanceOverview:
    def test_overview_counts(self):
        result = performance_overview_from_records(RECORDS, START, END, "day")
        overview = result["overview"]
        assert result["groupBy"] == "day"
        assert overview["submittedCount"] == 3
        # D is completed at its first gm_approved entry (03-03 20:00)
        assert overview["completedCount"] == 2
        assert overview["wipCount"] == 1
        assert overview["e2eSamples"] == 2
        assert overview["e2eMedian"] == 30.0
        assert overview["e2eP90"] == 34.8

    def test_daily_series(self):
        series = performance_overview_from_records(RECORDS, START, END, "day")["series"]
        assert len(series["labels"]) == 3
        assert series["labels"][0] == START.isoformat()
        assert series["submitted"] == [2, 1, 0]
        assert series["completed"] == [0, 1, 1]
        assert series["wip"] == [2, 2, 1]
        assert series["e2eMedian"] == [0, 24.0, 36.0]

    def test_weekly_grouping_is_one_interval(self):
        series = performance_overview_from_records(RECORDS, START, END, "week")["series"]
        assert series["labels"] == [START.isoformat()]
        assert series["submitted"] == [3]

    def test_monthly_steps_clamp_day(self):
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        end = datetime(2026, 4, 30, tzinfo=timezone.utc)
        labels = performance_overview_from_records([], start, end, "month")["series"]["labels"]
        assert labels == [
            "2026-01-31T00:00:00+00:00", "2026-02-28T00:00:00+00:00",
            "2026-03-28T00:00:00+00:00", "2026-04-28T00:00:00+00:00",
        ]

    def test_rejection_is_not_completion(self):
        records = [{"id": "R", "status": "gm_rejected", "history": _history(
            ("submitted", _ts(1, 8)), ("gm_rejected", _ts(2, 8)),
        )}]
        overview = performance_overview_from_records(records, START, END)["overview"]
        assert overview["completedCount"] == 0
        assert overview["wipCount"] == 1

    def test_edit_markers_do_not_change_series(self):
        edited = [
            {**record, "history": record["history"] + _history(("edited", _ts(3, 23)))}
            for record in RECORDS
        ]
        plain = performance_overview_from_records(RECORDS, START, END, "day")
        marked = performance_overview_from_records(edited, START, END, "day")
        assert marked["overview"] == plain["overview"]
        assert marked["series"] == plain["series"]

    def test_parse_range(self):
        start, end, group_by = parse_range("2026-03-01", "2026-03-31T23:59:59Z", "bogus")
        assert start == START
        assert end.tzinfo is not None
        assert group_by == "day"
        with pytest.raises(ValidationError):
            parse_range("2026-03-31", "2026-03-01")
        with pytest.raises(ValidationError):
            parse_range("", "2026-03-01")


class TestStatusIntegrity:
    def test_mismatch_and_loops(self):
        records = [
            {"id": "OK", "status": "submitted", "updatedAt": _ts(2), "history": _history(
                ("submitted", _ts(1)), ("edited", _ts(2)),
            )},
            {"id": "BAD", "status": "in_costing", "updatedAt": _ts(2), "history": _history(
                ("submitted", _ts(1)),
            )},
            {"id": "LOOP", "status": "submitted", "updatedAt": _ts(5), "history": _history(
                ("submitted", _ts(1)), ("clarification_needed", _ts(2)), ("submitted", _ts(3)),
                ("clarification_needed", _ts(4)), ("submitted", _ts(5)),
            )},
            {"id": "EMPTY", "status": "draft", "history": []},
        ]
        now = datetime(2026, 3, 10, tzinfo=timezone.utc)
        report = status_integrity_from_records(records, now=now)
        assert report["generatedAt"] == now.isoformat()
        assert report["totalRequests"] == 4
        assert report["mismatchCount"] == 1
        assert report["mismatches"][0] == {
            "id": "BAD",
            "currentStatus": "in_costing",
            "latestHistoryStatus": "submitted",
            "latestHistoryAt": _ts(1),
            "updatedAt": _ts(2),
        }
        assert report["repeatedSubmitLoopCount"] == 1
        assert report["repeatedSubmitLoops"][0]["id"] == "LOOP"
        assert report["repeatedSubmitLoops"][0]["submitAfterClarificationCount"] == 2

    def test_submitted_without_lifecycle_history_is_a_mismatch(self):
        records = [
            {"id": "NOHIST", "status": "submitted", "updatedAt": _ts(2), "history": []},
            {"id": "EDITONLY", "status": "submitted", "updatedAt": _ts(3), "history": _history(
                ("edited", _ts(3)),
            )},
            {"id": "DRAFTEDIT", "status": "draft", "history": _history(("edited", _ts(3)))},
        ]
        report = status_integrity_from_records(records)
        assert report["mismatchCount"] == 2
        assert report["mismatches"][0] == {
            "id": "NOHIST",
            "currentStatus": "submitted",
            "latestHistoryStatus": None,
            "latestHistoryAt": None,
            "updatedAt": _ts(2),
        }
        assert report["mismatches"][1]["id"] == "EDITONLY"
        assert report["mismatches"][1]["latestHistoryStatus"] is None

    def test_limit_truncates_rows_not_counts(self):
        records = [
            {"id": f"R{i}", "status": "closed", "history": _history(("submitted", _ts(1)))}
            for i in range(5)
        ]
        report = status_integrity_from_records(records, limit=2)
        assert report["mismatchCount"] == 5
        assert len(report["mismatches"]) == 2

    @pytest.mark.parametrize("raw,expected", [
        (None, 100), ("abc", 100), ("0", 1), ("-3", 1), ("250", 250), (9999, 500),
    ])
    def test_limit_clamp(self, raw, expected):
        assert clamp_integrity_limit(raw) == expected


class TestReportingApi:
    def test_overview_requires_range(self, client):
        r = client.get("/api/v1/performance/overview")
        assert r.status_code == 400
        assert r.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_overview_reversed_range(self, client):
        r = client.get("/api/v1/performance/overview?from=2026-03-05&to=2026-03-01")
        assert r.status_code == 400

    def test_overview_counts_live_requests(self, client, sales):
        r = client.post("/api/v1/requests", json={"clientName": "Tirsan"}, headers=sales.to_headers())
        rid = r.get_json()["id"]
        client.post(f"/api/v1/requests/{rid}/status", json={"action": "submit"}, headers=sales.to_headers())

        r = client.get("/api/v1/performance/overview?from=2000-01-01&to=2100-01-01&groupBy=month")
        assert r.status_code == 200
        body = r.get_json()
        assert body["groupBy"] == "month"
        assert body["overview"]["submittedCount"] == 1
        assert body["overview"]["wipCount"] == 1

    def test_status_integrity_endpoint(self, client, sales):
        r = client.post("/api/v1/requests", json={"clientName": "Tirsan"}, headers=sales.to_headers())
        rid = r.get_json()["id"]
        client.post(f"/api/v1/requests/{rid}/status", json={"action": "submit"}, headers=sales.to_headers())

        r = client.get("/api/v1/requests/status-integrity?limit=10")
        assert r.status_code == 200
        body = r.get_json()
        assert body["totalRequests"] == 1
        assert body["mismatchCount"] == 0
        assert body["repeatedSubmitLoops"] == []
