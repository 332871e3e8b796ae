"""Customer request service layer: persistence around the pure lifecycle.

Transaction policy: functions use flush() so ids and audit rows exist, never
commit().  The route handler commits through ``db_commit_or_error``.

Operations:
- Request id generation (CRA<yymmdd><nn>, per-day counter)
- Create / update (aggregate normalizer, locked offer lines, ``edited`` marker)
- Status transitions (guard table, ledger append, status column in one flush)
- Summary list, search, delete
"""
import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import defer

from quote_pipeline.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from quote_pipeline.models import db
from quote_pipeline.models.audit import write_audit
from quote_pipeline.models.request import (
    DEFAULT_PRIORITY,
    EDITED,
    REQUEST_STATUSES,
    TERMINAL_STATUSES,
    CustomerRequest,
    RequestCounter,
)
from quote_pipeline.services import request_lifecycle
from quote_pipeline.services.client_offer import check_locked_edit
from quote_pipeline.services.request_aggregate import normalize_request, with_term_count
from quote_pipeline.utils.helpers import parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)

CREATE_ROLES = ("sales", "admin")
MAX_SEARCH_LIMIT = 100

# Workflow-owned keys; request bodies never set them.
PROTECTED_FIELDS = (
    "id", "status", "history", "createdAt", "createdBy", "createdByName",
    "updatedAt", "availableActions", "gm",
)
# Request-only control keys that are not part of the document.
_CONTROL_FIELDS = ("historyEvent", "historyComment", "userId", "userName")


# ── Identity ─────────────────────────────────────────────────────────────────


def next_request_id(now: datetime | None = None) -> str:
    """Allocate the next ``CRA<yymmdd><nn>`` id from the per-day counter."""
    day = (now or utcnow()).strftime("%y%m%d")
    name = f"request_{day}"
    counter = (
        db.session.query(RequestCounter)
        .filter_by(name=name)
        .with_for_update()
        .one_or_none()
    )
    if counter is None:
        counter = RequestCounter(name=name, value=0)
        db.session.add(counter)
    counter.value = (counter.value or 0) + 1
    db.session.flush()
    return f"CRA{day}{counter.value:02d}"


# ── Serialisation ────────────────────────────────────────────────────────────


def serialize(req: CustomerRequest, principal=None) -> dict:
    """Full record plus the actions the caller's role could take now."""
    body = req.to_dict()
    role = principal.role if principal is not None else None
    body["availableActions"] = request_lifecycle.available_actions(req.status, role)
    return body


def _write_document(req: CustomerRequest, data: dict) -> None:
    """Store the document and mirror the summary columns from it."""
    req.status = data["status"]
    req.priority = data.get("priority") or DEFAULT_PRIORITY
    req.client_name = data.get("clientName") or ""
    req.application_vehicle = data.get("applicationVehicle") or ""
    req.application_vehicle_other = data.get("applicationVehicleOther") or ""
    req.country = data.get("country") or ""
    req.country_other = data.get("countryOther") or ""
    req.updated_at = parse_datetime(data.get("updatedAt")) or utcnow()
    # Summary columns are authoritative; the document copy omits them.
    req.data = {k: v for k, v in data.items() if k not in ("createdAt", "availableActions")}


def _clean_body(body: dict) -> dict:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return {k: v for k, v in body.items() if k not in PROTECTED_FIELDS and k not in _CONTROL_FIELDS}


def _audit(req: CustomerRequest, action: str, principal, diff: dict) -> None:
    try:
        write_audit(
            entity_id=req.id,
            action=action,
            actor=principal.id,
            actor_name=principal.name,
            actor_role=principal.role,
            diff=diff,
        )
    except Exception:
        logger.exception("Audit write failed request=%s action=%s", req.id, action)


# ── Queries ──────────────────────────────────────────────────────────────────


def get_request(rid: str) -> CustomerRequest:
    req = db.session.get(CustomerRequest, rid)
    if req is None:
        raise NotFoundError(resource="Request", resource_id=rid)
    return req


def list_summaries(status: str | None = None) -> list[dict]:
    """Summary rows, most recently updated first.  Never loads ``data``."""
    query = db.session.query(CustomerRequest).options(defer(CustomerRequest.data))
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Unknown status: {status}", field="status")
        query = query.filter(CustomerRequest.status == status)
    rows = query.order_by(CustomerRequest.updated_at.desc(), CustomerRequest.id.desc()).all()
    return [row.to_summary() for row in rows]


def list_full(principal=None) -> list[dict]:
    rows = db.session.query(CustomerRequest).order_by(CustomerRequest.updated_at.desc()).all()
    return [serialize(row, principal) for row in rows]


def clamp_limit(raw, default: int = 20) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, MAX_SEARCH_LIMIT))


def search_requests(q: str, limit: int = 20) -> list[dict]:
    """Summary-shaped matches on id, client, vehicle and country (typed ``Other`` text included)."""
    term = (q or "").strip()
    if not term:
        return []
    like = f"%{term}%"
    rows = (
        db.session.query(CustomerRequest)
        .options(defer(CustomerRequest.data))
        .filter(or_(
            CustomerRequest.id.ilike(like),
            CustomerRequest.client_name.ilike(like),
            CustomerRequest.application_vehicle.ilike(like),
            CustomerRequest.application_vehicle_other.ilike(like),
            CustomerRequest.country.ilike(like),
            CustomerRequest.country_other.ilike(like),
        ))
        .order_by(CustomerRequest.updated_at.desc())
        .limit(clamp_limit(limit))
        .all()
    )
    return [row.to_summary() for row in rows]


# ── Writes ───────────────────────────────────────────────────────────────────


def create_request(body: dict, principal, now: datetime | None = None) -> CustomerRequest:
    """Create a draft request owned by ``principal``.  History starts empty."""
    if principal.role not in CREATE_ROLES:
        raise ForbiddenError("create", principal.role, CREATE_ROLES)
    now = now or utcnow()
    data = normalize_request(_clean_body(body))

    rid = next_request_id(now)
    data.update({
        "id": rid,
        "status": request_lifecycle.INITIAL_STATUS,
        "history": [],
        "createdBy": principal.id,
        "createdByName": principal.name,
        "updatedAt": to_iso(now),
    })
    req = CustomerRequest(
        id=rid,
        created_by=principal.id,
        created_by_name=principal.name,
        created_at=now,
    )
    _write_document(req, data)
    db.session.add(req)
    db.session.flush()

    _audit(req, "request.created", principal, {"status": {"old": None, "new": req.status}})
    logger.info("Request created request=%s user=%s", rid, principal.id)
    return req


def update_request(req: CustomerRequest, body: dict, principal, now: datetime | None = None) -> CustomerRequest:
    """Merge field changes; status and history are never taken from the body."""
    if req.status in TERMINAL_STATUSES:
        raise InvalidTransitionError("update", req.status, "request is closed for edits")
    now = now or utcnow()
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    previous = req.to_dict()
    changes = _clean_body(body)
    if isinstance(changes.get("sales"), dict):
        changes["sales"] = with_term_count(changes["sales"])
    merged = {**previous, **changes}
    data = normalize_request(merged)
    check_locked_edit(previous.get("clientOfferConfig"), data.get("clientOfferConfig") or {})
    data["updatedAt"] = to_iso(now)

    if body.get("historyEvent") == EDITED:
        data, err = request_lifecycle.record_edit(
            data, principal, body.get("historyComment"), now=now,
        )
        if err:
            raise err.to_exception()

    changed = sorted(
        k for k in set(previous) | set(data)
        if k not in ("updatedAt", "history", "availableActions") and previous.get(k) != data.get(k)
    )
    _write_document(req, data)
    db.session.flush()

    _audit(req, "request.updated", principal, {"fields": changed})
    logger.info("Request updated request=%s fields=%s user=%s", req.id, ",".join(changed), principal.id)
    return req


def resolve_action_from_body(req: CustomerRequest, body: dict) -> str:
    """``action`` wins; otherwise map a target ``status`` to the unique action reaching it."""
    action = (body.get("action") or "").strip()
    if action:
        return action
    target = (body.get("status") or "").strip()
    if not target:
        raise ValidationError("action or status is required", field="action")
    resolved = request_lifecycle.resolve_action(req.status, target)
    if resolved is None:
        raise InvalidTransitionError(f"→{target}", req.status, f"no transition to '{target}'")
    return resolved


def transition_request(req: CustomerRequest, body: dict, principal, now: datetime | None = None) -> CustomerRequest:
    """Run one guarded transition and persist ledger, status and payload together."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    action = resolve_action_from_body(req, body)

    payload = dict(body.get("payload") or {})
    if body.get("comment") is not None:
        payload.setdefault("comment", body.get("comment"))

    outcome, err = request_lifecycle.apply_transition(req.to_dict(), action, principal, payload, now=now)
    if err:
        raise err.to_exception()

    _write_document(req, outcome.record)
    db.session.flush()

    _audit(req, "request.status_changed", principal, {
        "action": action,
        "status": {"old": outcome.previous_status, "new": req.status},
    })
    return req


def delete_request(req: CustomerRequest, principal) -> None:
    rid, status = req.id, req.status
    db.session.delete(req)
    db.session.flush()
    _audit(req, "request.deleted", principal, {"status": {"old": status, "new": None}})
    logger.info("Request deleted request=%s user=%s", rid, principal.id)
