"""
Depot M&R Platform
Audit blueprint.

Endpoints:
    GET  /api/v1/audit                                — filtered audit log, newest first
    GET  /api/v1/audit/<entity_type>/<entity_id>      — history of one entity, oldest first
"""

from flask import Blueprint, jsonify, request

from depot.core.exceptions import ValidationError
from depot.services.runtime import get_runtime

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return audit entries with optional filters.

    Query params:
        entity_type  — CONTAINER, WASHING_ORDER, EOR, ...
        entity_id    — entity id
        action       — action (prefix match)
        actor        — actor
        start, end   — ISO timestamps bounding the entry time
        limit        — max entries (default 200, max 1000)
    """
    try:
        logs = get_runtime().audit.search(
            entity_type=request.args.get("entity_type"),
            entity_id=request.args.get("entity_id"),
            actor=request.args.get("actor"),
            action=request.args.get("action"),
            start=request.args.get("start"),
            end=request.args.get("end"),
            limit=request.args.get("limit", 200, type=int),
        )
    except ValueError as exc:
        raise ValidationError(f"Invalid date filter: {exc}", details={"start/end": "invalid"}) from exc
    return jsonify({"audit_logs": logs, "total": len(logs)})


# ── Entity history ───────────────────────────────────────────────────────────

@audit_bp.route("/audit/<entity_type>/<entity_id>", methods=["GET"])
def entity_history(entity_type, entity_id):
    logs = get_runtime().audit.for_entity(entity_type.upper(), entity_id)
    return jsonify({"audit_logs": logs, "total": len(logs)})
