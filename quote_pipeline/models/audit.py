"""
Customer Request Pipeline
Audit domain model.

Models:
    - AuditLog: immutable, append-only administrative audit trail.

The request history ledger (``data["history"]``) is the business record of a
request's lifecycle; AuditLog is the operator-facing trail of every API write,
including deletes that remove the request itself.
"""

import json
from datetime import datetime, timezone

from quote_pipeline.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    "request.created",
    "request.updated",
    "request.status_changed",
    "request.deleted",
}


class AuditLog(db.Model):
    """
    One row per write.  ``diff_json`` carries the old→new snapshot of the
    fields that changed (``status`` for transitions, field names for updates).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, default="request")
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="request.created | request.status_changed | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_name = db.Column(db.String(255), nullable=True)
    actor_role = db.Column(db.String(20), nullable=True)

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_name": self.actor_name,
            "actor_role": self.actor_role,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_id: str,
    action: str,
    actor: str = "system",
    actor_name: str | None = None,
    actor_role: str | None = None,
    entity_type: str = "request",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        actor_name=actor_name,
        actor_role=actor_role,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
