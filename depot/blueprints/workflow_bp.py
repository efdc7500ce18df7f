"""
Depot M&R Platform
Workflow blueprint — containers and the workflow entities hanging off them.

Endpoints (all under /api/v1):
    GET    /<collection>                        — list (query params filter by field)
    POST   /<collection>                        — create (container registration, orders, ...)
    GET    /<collection>/<id>                   — single entity
    PATCH  /<collection>/<id>                   — whitelisted field update
    GET    /<collection>/<id>/events            — events legal from the current status
    POST   /<collection>/<id>/events/<event>    — fire a workflow event
    POST   /washing-orders/<id>/assign          — bay assignment
    GET    /containers/search?q=                — number / booking / block-row search
    GET    /stats/containers, /stats/eors
    GET    /sync/status, POST /sync/reconcile

<collection> is the dashed collection name: containers, washing-orders,
surveys, eors, repair-orders, shunting-requests, pre-inspections,
stacking-requests.
"""

import logging

from flask import Blueprint, jsonify, request

from depot.blueprints import current_actor, json_body
from depot.services.collections import SLUGS
from depot.services.runtime import get_runtime
from depot.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")

_CREATORS = {
    "containers": "register_container",
    "washing_orders": "create_washing_order",
    "surveys": "create_survey",
    "eors": "create_eor",
    "repair_orders": "create_repair_order",
    "shunting_requests": "create_shunting_request",
    "pre_inspections": "schedule_pre_inspection",
    "stacking_requests": "create_stacking_request",
}


def _collection(slug: str):
    name = SLUGS.get(slug)
    if name not in _CREATORS:
        return None
    return name


def _unknown(slug: str):
    return api_error(E.NOT_FOUND, f"Unknown collection: {slug}")


# ── Collections ──────────────────────────────────────────────────────────────


@workflow_bp.route("/<slug>", methods=["GET"])
def list_entities(slug):
    """List a collection.  Every query param is an equality filter."""
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    filters = {k: v for k, v in request.args.items() if v != ""}
    items = get_runtime().workflow.list(name, **filters)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/<slug>", methods=["POST"])
def create_entity(slug):
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    data = json_body()
    actor = current_actor(data)
    data.pop("actor", None)
    svc = get_runtime().workflow
    entity = getattr(svc, _CREATORS[name])(data, actor)
    return jsonify(entity), 201


@workflow_bp.route("/containers/search", methods=["GET"])
def search_containers():
    items = get_runtime().workflow.search_containers(request.args.get("q", ""))
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/<slug>/<entity_id>", methods=["GET"])
def get_entity(slug, entity_id):
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    return jsonify(get_runtime().workflow.get(name, entity_id))


@workflow_bp.route("/<slug>/<entity_id>", methods=["PATCH"])
def update_entity(slug, entity_id):
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    data = json_body()
    actor = current_actor(data)
    data.pop("actor", None)
    return jsonify(get_runtime().workflow.update_fields(name, entity_id, data, actor))


# ── Workflow events ──────────────────────────────────────────────────────────


@workflow_bp.route("/<slug>/<entity_id>/events", methods=["GET"])
def list_events(slug, entity_id):
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    svc = get_runtime().workflow
    entity = svc.get(name, entity_id)
    return jsonify({
        "id": entity_id,
        "status": entity["status"],
        "events": svc.allowed_events(name, entity_id),
    })


@workflow_bp.route("/<slug>/<entity_id>/events/<event>", methods=["POST"])
def fire_event(slug, entity_id, event):
    """
    Fire *event* on an entity.

    The JSON body is the event payload, e.g.
        reject   {"reason": "..."}
        complete {"checklist": [{"id": "floor", "required": true, "pass": true}]}
        qc_fail  {"reasons": ["residue"]}
    """
    name = _collection(slug)
    if name is None:
        return _unknown(slug)
    data = json_body()
    actor = current_actor(data)
    data.pop("actor", None)
    entity = get_runtime().workflow.fire(name, entity_id, event.replace("-", "_"), data, actor)
    return jsonify(entity)


@workflow_bp.route("/washing-orders/<wo_id>/assign", methods=["POST"])
def assign_bay(wo_id):
    data = json_body()
    entity = get_runtime().workflow.assign_bay(
        wo_id, data.get("bay"), data.get("team"), data.get("scheduled_at"),
        actor=current_actor(data),
    )
    return jsonify(entity)


# ── Stats & sync ─────────────────────────────────────────────────────────────


@workflow_bp.route("/stats/containers", methods=["GET"])
def container_stats():
    return jsonify(get_runtime().workflow.container_stats())


@workflow_bp.route("/stats/eors", methods=["GET"])
def eor_stats():
    return jsonify(get_runtime().workflow.eor_stats())


@workflow_bp.route("/sync/status", methods=["GET"])
def sync_status():
    rt = get_runtime()
    return jsonify({
        "mode": rt.mode,
        "client_id": rt.reconciler.client_id,
        "pending": rt.reconciler.pending(),
    })


@workflow_bp.route("/sync/reconcile", methods=["POST"])
def reconcile():
    rt = get_runtime()
    remaining = rt.reconciler.reconcile()
    logger.info("Manual reconcile: %d write(s) still pending", remaining)
    return jsonify({"mode": rt.mode, "pending": remaining})
