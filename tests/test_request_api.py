"""
Request API tests: the backing store contract over the Flask test client:
  - Create (role gating, id allocation, draft with empty history)
  - Summary / full / search reads
  - Status transitions by action or target status, guard errors → 403/409/422
  - Field updates with the ``edited`` marker, protected fields, terminal refusal
  - Delete (admin only), offer projection, audit trail, health
"""

from datetime import datetime, timedelta, timezone

import pytest

from quote_pipeline.models import db
from quote_pipeline.models.audit import AuditLog
from quote_pipeline.models.request import CustomerRequest


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _create(client, principal, **body):
    payload = {
        "clientName": "Anadolu Trailer",
        "applicationVehicle": "semi_trailer",
        "country": "TR",
        "products": [{"axleLocation": "rear", "quantity": 6, "tyreSize": "385/65R22.5"}],
    }
    payload.update(body)
    r = client.post("/api/v1/requests", json=payload, headers=principal.to_headers())
    assert r.status_code == 201, f"Create failed: {r.get_json()}"
    return r.get_json()


def _transition(client, rid, principal, action=None, **extra):
    body = dict(extra)
    if action:
        body["action"] = action
    return client.post(f"/api/v1/requests/{rid}/status", json=body, headers=principal.to_headers())


def _get(client, rid, principal=None):
    headers = principal.to_headers() if principal else {}
    return client.get(f"/api/v1/requests/{rid}", headers=headers)


def _future_date(days=10):
    return (datetime.now(timezone.utc) + timedelta(days=days)).date().isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_create_draft(self, client, sales):
        req = _create(client, sales)
        assert req["id"].startswith("CRA")
        assert len(req["id"]) == 11
        assert req["status"] == "draft"
        assert req["history"] == []
        assert req["createdBy"] == "u-alice"
        assert req["createdByName"] == "Alice"
        assert req["availableActions"] == ["submit"]
        assert req["products"][0]["finish"] == "Black Primer default"

    def test_ids_increase_per_day(self, client, sales):
        first = _create(client, sales)
        second = _create(client, sales)
        assert first["id"][:9] == second["id"][:9]
        assert int(second["id"][9:]) == int(first["id"][9:]) + 1

    def test_create_requires_principal(self, client):
        r = client.post("/api/v1/requests", json={"clientName": "X"})
        assert r.status_code == 401
        assert r.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_role_is_unauthenticated(self, client):
        r = client.post("/api/v1/requests", json={"clientName": "X"},
                        headers={"X-User-Id": "u-1", "X-User-Role": "intern"})
        assert r.status_code == 401

    def test_design_cannot_create(self, client, design):
        r = client.post("/api/v1/requests", json={"clientName": "X"}, headers=design.to_headers())
        assert r.status_code == 403
        assert r.get_json()["details"]["allowed"] == ["sales", "admin"]

    def test_protected_fields_are_ignored(self, client, sales):
        req = _create(client, sales, status="gm_approved", history=[{"status": "closed"}], id="HACK")
        assert req["status"] == "draft"
        assert req["history"] == []
        assert req["id"] != "HACK"

    def test_invalid_field_is_422(self, client, sales):
        r = client.post("/api/v1/requests", json={"country": "other"}, headers=sales.to_headers())
        assert r.status_code == 422
        assert r.get_json()["details"]["field"] == "countryOther"

    def test_invalid_json_is_400(self, client, sales):
        r = client.post("/api/v1/requests", data="not json", headers={
            **sales.to_headers(), "Content-Type": "application/json",
        })
        assert r.status_code == 400

    def test_form_content_type_is_415(self, client, sales):
        r = client.post("/api/v1/requests", data={"clientName": "X"}, headers=sales.to_headers())
        assert r.status_code == 415


# ═══════════════════════════════════════════════════════════════════════════
# Reads
# ═══════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_summary_shape(self, client, sales):
        req = _create(client, sales)
        r = client.get("/api/v1/requests/summary")
        assert r.status_code == 200
        rows = r.get_json()
        assert len(rows) == 1
        row = rows[0]
        assert row["id"] == req["id"]
        assert row["clientName"] == "Anadolu Trailer"
        assert "products" not in row
        assert "history" not in row

    def test_summary_status_filter(self, client, sales):
        a = _create(client, sales)
        _create(client, sales)
        _transition(client, a["id"], sales, "submit")
        r = client.get("/api/v1/requests/summary?status=submitted")
        assert [row["id"] for row in r.get_json()] == [a["id"]]
        r = client.get("/api/v1/requests/summary?status=bogus")
        assert r.status_code == 422

    def test_full_list(self, client, sales):
        _create(client, sales)
        r = client.get("/api/v1/requests", headers=sales.to_headers())
        assert r.status_code == 200
        assert r.get_json()[0]["products"]

    def test_get_unknown_is_404(self, client):
        r = client.get("/api/v1/requests/CRA00000099")
        assert r.status_code == 404
        assert r.get_json()["code"] == "ERR_NOT_FOUND"

    def test_available_actions_follow_role(self, client, sales, design):
        req = _create(client, sales)
        _transition(client, req["id"], sales, "submit")
        assert _get(client, req["id"], sales).get_json()["availableActions"] == []
        assert _get(client, req["id"], design).get_json()["availableActions"] == [
            "set_under_review", "request_clarification", "accept",
        ]
        assert _get(client, req["id"]).get_json()["availableActions"] == []

    def test_search(self, client, sales):
        _create(client, sales, clientName="Kassbohrer")
        _create(client, sales, clientName="Tirsan")
        r = client.get("/api/v1/requests/search?q=tirs")
        assert [row["clientName"] for row in r.get_json()] == ["Tirsan"]
        r = client.get("/api/v1/requests/search?q=TR&limit=1")
        assert len(r.get_json()) == 1
        r = client.get("/api/v1/requests/search?q=")
        assert r.get_json() == []

    def test_other_text_reaches_summary_and_search(self, client, sales):
        req = _create(
            client, sales,
            applicationVehicle="other", applicationVehicleOther="Mega Trailer",
            country="other", countryOther="Atlantis",
        )
        _create(client, sales)
        rows = client.get("/api/v1/requests/summary").get_json()
        row = next(r for r in rows if r["id"] == req["id"])
        assert row["applicationVehicle"] == "other"
        assert row["applicationVehicleOther"] == "Mega Trailer"
        assert row["countryOther"] == "Atlantis"
        r = client.get("/api/v1/requests/search?q=mega")
        assert [found["id"] for found in r.get_json()] == [req["id"]]
        r = client.get("/api/v1/requests/search?q=atlant")
        assert [found["id"] for found in r.get_json()] == [req["id"]]

    def test_offer_projection(self, client, sales):
        req = _create(client, sales)
        r = client.get(f"/api/v1/requests/{req['id']}/offer")
        assert r.status_code == 200
        body = r.get_json()
        assert body["offer"]["lines"][0]["quantity"] == 6
        assert body["totals"] == {"lines": {}, "total": 0.0}


# ═══════════════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_clarification_scenario(self, client, sales, design):
        req = _create(client, sales)

        r = _transition(client, req["id"], sales, "submit")
        assert r.status_code == 200
        body = r.get_json()
        assert body["status"] == "submitted"
        assert len(body["history"]) == 1

        r = _transition(client, req["id"], design, "request_clarification", comment="need tyre size")
        assert r.status_code == 200
        body = r.get_json()
        assert body["status"] == "clarification_needed"
        assert len(body["history"]) == 2
        assert body["history"][1]["comment"] == "need tyre size"
        assert body["history"][1]["userName"] == "Bob"

        r = _transition(client, req["id"], sales, "approve")
        assert r.status_code == 403
        assert r.get_json()["code"] == "ERR_FORBIDDEN"

    def test_transition_by_target_status(self, client, sales):
        req = _create(client, sales)
        r = _transition(client, req["id"], sales, status="submitted", userId="ignored", userName="Ignored")
        assert r.status_code == 200
        entry = r.get_json()["history"][-1]
        assert entry["status"] == "submitted"
        assert entry["userId"] == "u-alice"

    def test_unreachable_target_status_is_409(self, client, sales):
        req = _create(client, sales)
        r = _transition(client, req["id"], sales, status="closed")
        assert r.status_code == 409

    def test_missing_action_is_422(self, client, sales):
        req = _create(client, sales)
        r = _transition(client, req["id"], sales)
        assert r.status_code == 422
        assert r.get_json()["details"]["field"] == "action"

    def test_invalid_transition_is_409(self, client, sales, design):
        req = _create(client, sales)
        r = _transition(client, req["id"], design, "accept")
        assert r.status_code == 409
        details = r.get_json()["details"]
        assert details == {"action": "accept", "currentStatus": "draft"}

    def test_negative_selling_price(self, client, sales, costing):
        req = _create(client, sales)
        _transition(client, req["id"], sales, "submit")
        before = _transition(client, req["id"], costing, "start_costing").get_json()

        r = _transition(client, req["id"], costing, "submit_costing", payload={
            "sellingPrice": -5, "margin": 10, "vatMode": "without",
        })
        assert r.status_code == 422
        assert r.get_json()["details"]["field"] == "sellingPrice"

        after = _get(client, req["id"]).get_json()
        assert after["status"] == "in_costing"
        assert after["history"] == before["history"]

    def test_full_pipeline_to_close(self, client, sales, design, costing, admin):
        rid = _create(client, sales)["id"]
        steps = [
            (sales, "submit", {}),
            (design, "set_under_review", {}),
            (design, "accept", {"acceptanceMessage": "Feasible", "expectedReplyDate": _future_date()}),
            (design, "save_design_result", {"designResultComments": "Rev A"}),
            (costing, "start_costing", {}),
            (costing, "submit_costing", {"sellingPrice": 1200, "margin": 15, "vatMode": "without"}),
            (sales, "start_sales_followup", {}),
            (sales, "submit_for_approval", {
                "finalPrice": 1350, "margin": 18, "expectedDeliveryDate": "2026-12-01",
                "incoterm": "other", "incotermOther": "DAP Mersin", "vatMode": "with", "vatRate": 20,
                "paymentTermCount": 2,
                "paymentTerms": [
                    {"paymentName": "Advance", "paymentPercent": 40},
                    {"paymentName": "On delivery", "paymentPercent": 60},
                ],
            }),
            (admin, "approve", {"comment": "ok"}),
            (admin, "close", {}),
        ]
        for principal, action, payload in steps:
            r = _transition(client, rid, principal, action, payload=payload)
            assert r.status_code == 200, (action, r.get_json())

        body = _get(client, rid).get_json()
        assert body["status"] == "closed"
        assert [e["status"] for e in body["history"]] == [
            "submitted", "under_review", "feasibility_confirmed", "design_result",
            "in_costing", "costing_complete", "sales_followup", "gm_approval_pending",
            "gm_approved", "closed",
        ]
        assert body["gm"]["decision"] == "approved"
        assert body["clientOfferConfig"]["linesLocked"] is True
        assert body["sales"]["incotermOther"] == "DAP Mersin"

        row = db.session.get(CustomerRequest, rid)
        assert row.status == "closed"
        assert row.data["status"] == "closed"

    def test_payment_terms_resubmission(self, client, sales, admin):
        rid = _create(client, sales)["id"]
        row = db.session.get(CustomerRequest, rid)
        row.status = "gm_approval_pending"
        row.data = {**row.data, "status": "gm_approval_pending", "history": [
            {"id": "h-1", "status": "gm_approval_pending", "timestamp": "2026-03-02T09:00:00+00:00"},
        ], "sales": {
            "finalPrice": 1000, "margin": 10, "expectedDeliveryDate": "2026-12-01", "incoterm": "FOB",
            "vatMode": "without", "paymentTermCount": 2, "paymentTerms": [
                {"paymentName": "Advance", "paymentPercent": 50},
                {"paymentName": "Balance", "paymentPercent": 45},
            ],
        }}
        db.session.commit()

        assert _transition(client, rid, sales, "submit_for_approval").status_code == 409
        assert _transition(client, rid, admin, "reject", comment="fix terms").status_code == 200

        r = _transition(client, rid, sales, "submit_for_approval")
        assert r.status_code == 422
        assert r.get_json()["details"]["field"] == "paymentTerms"

        r = client.put(f"/api/v1/requests/{rid}", json={"sales": {
            **_get(client, rid).get_json()["sales"],
            "paymentTerms": [
                {"paymentName": "Advance", "paymentPercent": 50},
                {"paymentName": "Balance", "paymentPercent": 50},
            ],
        }}, headers=sales.to_headers())
        assert r.status_code == 200

        r = _transition(client, rid, sales, "submit_for_approval")
        assert r.status_code == 200
        assert r.get_json()["status"] == "gm_approval_pending"


# ═══════════════════════════════════════════════════════════════════════════
# Updates & delete
# ═══════════════════════════════════════════════════════════════════════════


class TestUpdate:
    def test_edit_marker(self, client, sales):
        rid = _create(client, sales)["id"]
        _transition(client, rid, sales, "submit")
        r = client.put(f"/api/v1/requests/{rid}", json={
            "clientName": "Anadolu Trailer A.S.",
            "historyEvent": "edited",
            "historyComment": "legal name",
        }, headers=sales.to_headers())
        assert r.status_code == 200
        body = r.get_json()
        assert body["clientName"] == "Anadolu Trailer A.S."
        assert body["status"] == "submitted"
        assert [e["status"] for e in body["history"]] == ["submitted", "edited"]
        assert body["history"][-1]["comment"] == "legal name"

    def test_update_without_marker_keeps_history(self, client, sales):
        rid = _create(client, sales)["id"]
        r = client.put(f"/api/v1/requests/{rid}", json={"priority": "urgent", "status": "closed"},
                       headers=sales.to_headers())
        body = r.get_json()
        assert body["priority"] == "urgent"
        assert body["status"] == "draft"
        assert body["history"] == []

    def test_sent_terms_without_count_are_all_kept(self, client, sales):
        rid = _create(client, sales)["id"]
        r = client.put(f"/api/v1/requests/{rid}", json={"sales": {"paymentTerms": [
            {"paymentName": "Deposit", "paymentPercent": 30},
            {"paymentName": "Shipment", "paymentPercent": 40},
            {"paymentName": "Balance", "paymentPercent": 30},
        ]}}, headers=sales.to_headers())
        assert r.status_code == 200
        block = r.get_json()["sales"]
        assert block["paymentTermCount"] == 3
        assert [t["paymentName"] for t in block["paymentTerms"]] == ["Deposit", "Shipment", "Balance"]

    def test_terminal_request_refuses_updates(self, client, sales, admin):
        rid = _create(client, sales)["id"]
        _transition(client, rid, admin, "cancel")
        r = client.put(f"/api/v1/requests/{rid}", json={"priority": "low"}, headers=sales.to_headers())
        assert r.status_code == 409

    def test_update_unknown_is_404(self, client, sales):
        r = client.put("/api/v1/requests/CRA00000099", json={"priority": "low"}, headers=sales.to_headers())
        assert r.status_code == 404


class TestDelete:
    def test_only_admin_deletes(self, client, sales, admin):
        rid = _create(client, sales)["id"]
        assert client.delete(f"/api/v1/requests/{rid}", headers=sales.to_headers()).status_code == 403
        r = client.delete(f"/api/v1/requests/{rid}", headers=admin.to_headers())
        assert r.status_code == 200
        assert r.get_json() == {"deleted": rid}
        assert _get(client, rid).status_code == 404


class TestAudit:
    def test_every_write_is_audited(self, client, sales, admin):
        rid = _create(client, sales)["id"]
        _transition(client, rid, sales, "submit")
        client.put(f"/api/v1/requests/{rid}", json={"priority": "high"}, headers=sales.to_headers())
        client.delete(f"/api/v1/requests/{rid}", headers=admin.to_headers())

        actions = [row.action for row in AuditLog.query.filter_by(entity_id=rid).order_by(AuditLog.id)]
        assert actions == [
            "request.created", "request.status_changed", "request.updated", "request.deleted",
        ]
        transition = AuditLog.query.filter_by(entity_id=rid, action="request.status_changed").one()
        assert transition.diff["status"] == {"old": "draft", "new": "submitted"}
        assert transition.actor_role == "sales"


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"

    @pytest.mark.parametrize("path", ["/api/v1/health/ready", "/api/v1/health/live"])
    def test_health_endpoints(self, client, path):
        assert client.get(path).status_code == 200

    def test_response_headers(self, client):
        r = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert r.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in r.headers
