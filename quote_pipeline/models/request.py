"""
Customer Request Pipeline
Request domain model.

Models:
    - CustomerRequest: one customer product inquiry.  The complete aggregate
      (products, stage payloads, attachments, history, clientOfferConfig) is
      stored as a JSON document in ``data``; the columns the dashboard list
      needs (selector values with their ``Other`` free text) are duplicated
      so ``/requests/summary`` never loads the document.
    - RequestCounter: per-day sequence backing CRA<yymmdd><nn> request ids.

Lifecycle: draft → submitted → under_review → feasibility_confirmed →
design_result → in_costing → costing_complete → sales_followup →
gm_approval_pending → gm_approved → closed (cancelled from any non-terminal).
"""

from datetime import datetime, timezone

from quote_pipeline.models import db
from quote_pipeline.utils.helpers import to_iso

# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_STATUSES = (
    "draft",
    "submitted",
    "under_review",
    "clarification_needed",
    "feasibility_confirmed",
    "design_result",
    "in_costing",
    "costing_complete",
    "sales_followup",
    "gm_approval_pending",
    "gm_rejected",
    "gm_approved",
    "closed",
    "cancelled",
)

# Audit marker: appears in history, never in ``status``.
EDITED = "edited"

TERMINAL_STATUSES = frozenset({"closed", "cancelled"})
COMPLETED_STATUSES = frozenset({"gm_approved", "closed"})

PRIORITIES = ("low", "normal", "high", "urgent")
DEFAULT_PRIORITY = "normal"

ROLES = ("sales", "design", "costing", "admin")

# Fields shared by the summary and full shapes.  The sync layer patches
# exactly these onto a cached full record.
SUMMARY_FIELDS = (
    "id",
    "status",
    "priority",
    "clientName",
    "applicationVehicle",
    "applicationVehicleOther",
    "country",
    "countryOther",
    "createdBy",
    "createdByName",
    "createdAt",
    "updatedAt",
)


def _utcnow():
    return datetime.now(timezone.utc)


class CustomerRequest(db.Model):
    """
    A customer request and its full aggregate document.

    ``status`` and ``data["status"]`` are written together with every history
    append; nothing else in the codebase assigns ``status``.
    """

    __tablename__ = "customer_requests"
    __table_args__ = (
        db.Index("idx_request_status", "status"),
        db.Index("idx_request_updated", "updated_at"),
    )

    id = db.Column(db.String(20), primary_key=True, comment="CRA<yymmdd><nn>")
    status = db.Column(db.String(40), nullable=False, default="draft")
    priority = db.Column(db.String(10), nullable=False, default=DEFAULT_PRIORITY)

    # Summary columns (copied from data on every write)
    client_name = db.Column(db.String(255), nullable=False, default="")
    application_vehicle = db.Column(db.String(255), nullable=False, default="")
    application_vehicle_other = db.Column(db.String(255), nullable=False, default="")
    country = db.Column(db.String(120), nullable=False, default="")
    country_other = db.Column(db.String(120), nullable=False, default="")
    created_by = db.Column(db.String(64), nullable=False, default="")
    created_by_name = db.Column(db.String(255), nullable=False, default="")

    data = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # ── Serialisation ────────────────────────────────────────────────────

    def to_summary(self) -> dict:
        """Lightweight projection for list views and polling."""
        return {
            "id": self.id,
            "status": self.status,
            "priority": self.priority or DEFAULT_PRIORITY,
            "clientName": self.client_name or "",
            "applicationVehicle": self.application_vehicle or "",
            "applicationVehicleOther": self.application_vehicle_other or "",
            "country": self.country or "",
            "countryOther": self.country_other or "",
            "createdBy": self.created_by or "",
            "createdByName": self.created_by_name or "",
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    def to_dict(self) -> dict:
        """Full record: the aggregate document with authoritative columns on top."""
        body = dict(self.data or {})
        body.update(self.to_summary())
        body.setdefault("history", [])
        body.setdefault("products", [])
        return body

    def __repr__(self):
        return f"<CustomerRequest {self.id} [{self.status}]>"


class RequestCounter(db.Model):
    """Monotonic per-day counter; ``name`` is ``request_<yymmdd>``."""

    __tablename__ = "request_counters"

    name = db.Column(db.String(40), primary_key=True)
    value = db.Column(db.Integer, nullable=False, default=0)


# ── Lifecycle transition table ───────────────────────────────────────────────
# action → allowed source statuses, target status, roles allowed to trigger it.

_NON_TERMINAL = tuple(s for s in REQUEST_STATUSES if s not in TERMINAL_STATUSES)

REQUEST_TRANSITIONS = {
    "submit": {"from": ("draft",), "to": "submitted", "roles": ("sales",)},
    "resubmit": {"from": ("clarification_needed",), "to": "submitted", "roles": ("sales",)},
    "set_under_review": {"from": ("submitted", "under_review"), "to": "under_review", "roles": ("design",)},
    "request_clarification": {
        "from": ("submitted", "under_review"), "to": "clarification_needed", "roles": ("design",),
    },
    "accept": {"from": ("submitted", "under_review"), "to": "feasibility_confirmed", "roles": ("design",)},
    "save_design_result": {
        "from": ("feasibility_confirmed", "design_result"), "to": "design_result", "roles": ("design",),
    },
    "start_costing": {
        "from": ("feasibility_confirmed", "design_result", "submitted", "under_review"),
        "to": "in_costing",
        "roles": ("costing",),
    },
    "submit_costing": {"from": ("in_costing",), "to": "costing_complete", "roles": ("costing",)},
    "start_sales_followup": {
        "from": ("costing_complete", "gm_rejected"), "to": "sales_followup", "roles": ("sales",),
    },
    "submit_for_approval": {
        "from": ("sales_followup", "gm_rejected"), "to": "gm_approval_pending", "roles": ("sales",),
    },
    "approve": {"from": ("gm_approval_pending",), "to": "gm_approved", "roles": ("admin",)},
    "reject": {"from": ("gm_approval_pending",), "to": "gm_rejected", "roles": ("admin",)},
    "cancel": {"from": _NON_TERMINAL, "to": "cancelled", "roles": ("admin",)},
    "close": {"from": ("gm_approved",), "to": "closed", "roles": ("admin",)},
}
