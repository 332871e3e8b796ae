"""
Customer Request Lifecycle Service

Pure guard evaluation and transition application over the request aggregate
document.  Nothing here touches the database; ``request_service`` persists
the outcome.

Guard order:
  1. role check          → GuardErrorKind.FORBIDDEN
  2. current-state check → GuardErrorKind.INVALID_TRANSITION (unknown actions too)
  3. payload validation  → GuardErrorKind.VALIDATION_FAILED (first failing field)

Guard failures are returned as ``GuardResult`` values, never raised, so a
caller can render the failing field.  ``GuardError.to_exception`` converts at
the HTTP boundary.

Usage:
    from quote_pipeline.services.request_lifecycle import apply_transition

    outcome, err = apply_transition(record, "submit", principal)
    if err:
        raise err.to_exception()
    record = outcome.record
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from quote_pipeline.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from quote_pipeline.models.request import (
    EDITED,
    REQUEST_STATUSES,
    REQUEST_TRANSITIONS,
    TERMINAL_STATUSES,
)
from quote_pipeline.services.history_ledger import HistoryEntry, HistoryLedger, append_row, make_entry
from quote_pipeline.services.stage_payloads import ledger_comment, parse_payload
from quote_pipeline.utils.helpers import to_iso, utcnow

logger = logging.getLogger(__name__)

INITIAL_STATUS = "draft"


class GuardErrorKind(str, Enum):
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION_FAILED = "validation_failed"


@dataclass(frozen=True)
class GuardError:
    kind: GuardErrorKind
    action: str
    current_status: str
    message: str
    role: str | None = None
    field: str | None = None

    def to_exception(self) -> Exception:
        if self.kind == GuardErrorKind.FORBIDDEN:
            rule = REQUEST_TRANSITIONS.get(self.action) or {}
            return ForbiddenError(self.action, self.role, rule.get("roles", ()))
        if self.kind == GuardErrorKind.INVALID_TRANSITION:
            return InvalidTransitionError(self.action, self.current_status, self.message)
        return ValidationError(self.message, field=self.field)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "action": self.action,
            "currentStatus": self.current_status,
            "message": self.message,
            "field": self.field,
        }


@dataclass(frozen=True)
class GuardResult:
    """Outcome of a guard evaluation; exactly one of ``to_status``/``error`` is meaningful."""

    ok: bool
    from_status: str
    to_status: str | None = None
    error: GuardError | None = None
    payload: object | None = None


@dataclass(frozen=True)
class TransitionOutcome:
    action: str
    previous_status: str
    record: dict
    entry: HistoryEntry


def _failure(kind, action, current, message, *, role=None, field=None) -> GuardResult:
    return GuardResult(
        ok=False,
        from_status=current,
        error=GuardError(kind, action, current, message, role=role, field=field),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Guard table queries
# ═════════════════════════════════════════════════════════════════════════════

def next_status(current: str, action: str, role: str | None) -> GuardResult:
    """
    Role and state guards only.

    Returns a successful GuardResult carrying the target status, or the first
    failing guard.  An unknown action is an invalid transition.
    """
    rule = REQUEST_TRANSITIONS.get(action)
    if rule is None:
        return _failure(GuardErrorKind.INVALID_TRANSITION, action, current,
                        f"Unknown action: {action}", role=role)
    if role not in rule["roles"]:
        return _failure(GuardErrorKind.FORBIDDEN, action, current,
                        f"Role '{role}' may not perform '{action}'", role=role)
    if current not in rule["from"]:
        return _failure(GuardErrorKind.INVALID_TRANSITION, action, current,
                        f"Cannot '{action}' from status '{current}'", role=role)
    return GuardResult(ok=True, from_status=current, to_status=rule["to"])


def available_actions(status: str, role: str | None) -> list[str]:
    """Actions whose role and state guards pass, in table order."""
    return [
        action for action, rule in REQUEST_TRANSITIONS.items()
        if role in rule["roles"] and status in rule["from"]
    ]


def resolve_action(current: str, target_status: str) -> str | None:
    """The unique action reaching ``target_status`` from ``current``, or None."""
    matches = [
        action for action, rule in REQUEST_TRANSITIONS.items()
        if rule["to"] == target_status and current in rule["from"]
    ]
    return matches[0] if len(matches) == 1 else None


def evaluate(
    record: dict,
    action: str,
    role: str | None,
    payload: dict | None = None,
    *,
    now: datetime | None = None,
) -> GuardResult:
    """Full guard evaluation (role, state, payload) against a record."""
    current = record.get("status") or INITIAL_STATUS
    result = next_status(current, action, role)
    if not result.ok:
        return result
    try:
        parsed = parse_payload(action, record, payload, now or utcnow())
    except ValidationError as exc:
        return _failure(GuardErrorKind.VALIDATION_FAILED, action, current, str(exc),
                        role=role, field=exc.field)
    return GuardResult(ok=True, from_status=current, to_status=result.to_status, payload=parsed)


# ═════════════════════════════════════════════════════════════════════════════
# Transition application
# ═════════════════════════════════════════════════════════════════════════════

def apply_transition(
    record: dict,
    action: str,
    principal,
    payload: dict | None = None,
    *,
    now: datetime | None = None,
) -> tuple[TransitionOutcome | None, GuardError | None]:
    """
    Evaluate guards and, on success, build the new record.

    The input record is never mutated.  The returned record has exactly one
    new ledger entry whose status is the target status, ``status`` set to it,
    the payload merged and ``updatedAt`` bumped.

    Returns:
        (outcome, None) on success, (None, guard_error) on failure.
    """
    now = now or utcnow()
    result = evaluate(record, action, principal.role, payload, now=now)
    if not result.ok:
        logger.info(
            "Transition rejected request=%s action=%s status=%s kind=%s field=%s",
            record.get("id"), action, result.from_status, result.error.kind.value, result.error.field,
        )
        return None, result.error

    updated = result.payload.apply(record, principal, now)
    entry = make_entry(
        result.to_status, principal.id, principal.name,
        ledger_comment(result.payload), now=now,
    )
    updated["history"] = append_row(record.get("history"), entry)
    updated["status"] = result.to_status
    updated["updatedAt"] = to_iso(now)

    logger.info(
        "Transition request=%s action=%s from=%s to=%s user=%s",
        record.get("id"), action, result.from_status, result.to_status, principal.id,
    )
    return TransitionOutcome(action, result.from_status, updated, entry), None


def record_edit(
    record: dict,
    principal,
    comment: str | None = None,
    *,
    now: datetime | None = None,
) -> tuple[dict | None, GuardError | None]:
    """Append an ``edited`` marker; status is unchanged.  Terminal requests refuse."""
    current = record.get("status") or INITIAL_STATUS
    if current in TERMINAL_STATUSES:
        return None, GuardError(
            GuardErrorKind.INVALID_TRANSITION, EDITED, current,
            f"Cannot edit request in terminal status '{current}'", role=principal.role,
        )
    now = now or utcnow()
    entry = make_entry(EDITED, principal.id, principal.name, comment, now=now)
    updated = dict(record)
    updated["history"] = append_row(record.get("history"), entry)
    updated["updatedAt"] = to_iso(now)
    return updated, None


def status_consistent(record: dict) -> bool:
    """Status equals the latest lifecycle ledger entry (``draft`` for an empty ledger)."""
    status = record.get("status")
    if status not in REQUEST_STATUSES:
        return False
    stage = HistoryLedger.from_list(record.get("history")).current_stage()
    if stage is None:
        return status == INITIAL_STATUS
    return status == stage
