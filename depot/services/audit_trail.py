"""
AuditTrail — append-only record of every accepted command.

``record()`` is fire-and-forget: it runs after the primary write has been
committed, commits on its own, and a failure is logged but never reaches the
caller.  Rows always land in ``audit_logs`` of the local database, whichever
backend holds the entities.

Usage:
    from depot.services.audit_trail import AuditTrail

    audit = AuditTrail()
    audit.record("WASHING_ORDER", "WSH-001", "QC_FAIL", actor="qc.lead",
                 old_value="PENDING_QC", new_value="REWORK")
    audit.for_entity("WASHING_ORDER", "WSH-001")
"""

import logging
from datetime import datetime

from depot.models import db
from depot.models.audit import AuditLog, write_audit
from depot.models.base import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 200
MAX_LIMIT = 1000


class AuditTrail:

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: str | None = "system",
        *,
        details: dict | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> dict | None:
        """Append one entry.  Returns it, or None if it could not be written."""
        try:
            log = write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor=actor or "system",
                details=details,
                old_value=old_value,
                new_value=new_value,
            )
            db.session.commit()
            return log.to_dict()
        except Exception:
            db.session.rollback()
            logger.exception("Audit record failed for %s/%s %s", entity_type, entity_id, action)
            return None

    def for_entity(self, entity_type: str, entity_id: str) -> list[dict]:
        """History of one entity, oldest first."""
        rows = (
            AuditLog.query
            .filter_by(entity_type=entity_type, entity_id=str(entity_id))
            .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
            .all()
        )
        return [r.to_dict() for r in rows]

    def search(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        actor: str | None = None,
        action: str | None = None,
        start: datetime | str | None = None,
        end: datetime | str | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[dict]:
        """Filtered entries, newest first.  *action* is a prefix match."""
        q = AuditLog.query
        if entity_type:
            q = q.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            q = q.filter(AuditLog.entity_id == str(entity_id))
        if actor:
            q = q.filter(AuditLog.actor == actor)
        if action:
            q = q.filter(AuditLog.action.startswith(action, autoescape=True))
        if start:
            q = q.filter(AuditLog.timestamp >= parse_timestamp(start))
        if end:
            q = q.filter(AuditLog.timestamp <= parse_timestamp(end))

        limit = min(MAX_LIMIT, max(1, int(limit or DEFAULT_LIMIT)))
        rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
        return [r.to_dict() for r in rows]
