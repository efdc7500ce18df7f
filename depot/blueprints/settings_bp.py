"""
Depot M&R Platform
Settings blueprint.

Endpoints:
    GET  /api/v1/settings          — every stored setting
    GET  /api/v1/settings/<key>    — one setting
    PUT  /api/v1/settings/<key>    — set {"value": ...}
"""

from flask import Blueprint, jsonify

from depot.blueprints import current_actor, json_body
from depot.core.exceptions import NotFoundError, ValidationError
from depot.services.runtime import get_runtime
from depot.services.settings_service import AUTO_APPROVAL_KEY

settings_bp = Blueprint("settings", __name__, url_prefix="/api/v1/settings")

_MISSING = object()


@settings_bp.route("", methods=["GET"])
def list_settings():
    return jsonify(get_runtime().settings.all())


@settings_bp.route("/<key>", methods=["GET"])
def get_setting(key):
    svc = get_runtime().settings
    if key == AUTO_APPROVAL_KEY:
        return jsonify({"key": key, "value": svc.get_auto_approval_threshold()})
    value = svc.get(key, _MISSING)
    if value is _MISSING:
        raise NotFoundError(resource="Setting", resource_id=key)
    return jsonify({"key": key, "value": value})


@settings_bp.route("/<key>", methods=["PUT"])
def put_setting(key):
    data = json_body()
    if "value" not in data:
        raise ValidationError("Setting value is required", details={"value": "required"})
    rt = get_runtime()
    old = rt.settings.get(key)
    row = rt.settings.set(key, data["value"])
    rt.audit.record("SETTING", key, "UPDATE", current_actor(data),
                    old_value=None if old is None else str(old), new_value=str(row["value"]))
    return jsonify(row)
