"""
Depot M&R Platform
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for every accepted
      transition / mutation, independent of the storage backend.
"""

import json
from datetime import UTC, datetime

from depot.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "CONTAINER", "WASHING_ORDER", "SURVEY", "EOR",
    "REPAIR_ORDER", "SHUNTING_REQUEST", "PRE_INSPECTION",
    "STACKING_REQUEST", "CHAT", "SETTING",
}

# Generic actions; workflow events are recorded under their upper-cased name
# (APPROVE, QC_FAIL, RESTART, ...).
AUDIT_ACTIONS = {
    "CREATE",
    "UPDATE",
    "DELETE",
    "STATUS_CHANGE",
    "APPROVE",
    "REJECT",
    "SEND",
    "ASSIGN",
    "CLOSE",
    "MESSAGE",
    "READ",
}


class AuditLog(db.Model):
    """
    Immutable audit trail entry.

    One row per accepted command.  ``details_json`` carries the command
    payload; ``old_value`` / ``new_value`` carry the status pair for
    transitions.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="CONTAINER | WASHING_ORDER | EOR | CHAT | …",
    )
    entity_id = db.Column(db.String(64), nullable=False)

    # What happened
    action = db.Column(
        db.String(40), nullable=False,
        comment="CREATE | UPDATE | APPROVE | QC_FAIL | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    details_json = db.Column(db.Text, default="{}")
    old_value = db.Column(db.String(60), nullable=True)
    new_value = db.Column(db.String(60), nullable=True)

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def details(self) -> dict:
        """Deserialise *details_json* to a Python dict."""
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        ts = self.timestamp
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "details": self.details,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "timestamp": ts.isoformat() if ts else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    details: dict | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
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
        details_json=json.dumps(details or {}, default=str),
        old_value=old_value,
        new_value=new_value,
    )
    db.session.add(log)
    db.session.flush()
    return log
