"""
Depot M&R Platform
Live chat blueprint.

Endpoints:
    GET    /api/v1/chats                  — list (?status=active|closed)
    POST   /api/v1/chats                  — get-or-create a chat for a guest / user
    GET    /api/v1/chats/<id>             — single chat with messages
    POST   /api/v1/chats/<id>/messages    — append a message (rate limited)
    POST   /api/v1/chats/<id>/read        — mark all messages read
    POST   /api/v1/chats/<id>/assign      — assign an agent
    POST   /api/v1/chats/<id>/close       — close
    DELETE /api/v1/chats/<id>             — delete (closed chats only)
    GET    /api/v1/chats/unread           — total unread for agents
"""

from flask import Blueprint, current_app, jsonify, request

from depot.blueprints import current_actor, json_body
from depot.services.runtime import get_runtime

chat_bp = Blueprint("chat", __name__, url_prefix="/api/v1/chats")

# ── Rate limiting ─────────────────────────────────────────────────────────
from depot import limiter  # noqa: E402

_message_limit = limiter.limit(lambda: current_app.config.get("CHAT_RATE_LIMIT", "30/minute"))


@chat_bp.route("", methods=["GET"])
def list_chats():
    svc = get_runtime().chat
    status = request.args.get("status")
    chats = svc.active_chats() if status == "active" else svc.list_chats(status)
    return jsonify({"items": chats, "total": len(chats)})


@chat_bp.route("", methods=["POST"])
def open_chat():
    data = json_body()
    chat = get_runtime().chat.get_or_create_chat(data.get("guest"), data.get("user"))
    return jsonify(chat), 201


@chat_bp.route("/unread", methods=["GET"])
def total_unread():
    return jsonify({"unread_admin": get_runtime().chat.total_unread_admin()})


@chat_bp.route("/<chat_id>", methods=["GET"])
def get_chat(chat_id):
    return jsonify(get_runtime().chat.get_chat(chat_id))


@chat_bp.route("/<chat_id>/messages", methods=["POST"])
@_message_limit
def send_message(chat_id):
    data = json_body()
    message = get_runtime().chat.send_message(chat_id, data.get("text"), data.get("sender", "guest"))
    return jsonify(message), 201


@chat_bp.route("/<chat_id>/read", methods=["POST"])
def mark_read(chat_id):
    return jsonify(get_runtime().chat.mark_as_read(chat_id, actor=current_actor()))


@chat_bp.route("/<chat_id>/assign", methods=["POST"])
def assign(chat_id):
    data = json_body()
    chat = get_runtime().chat.assign_chat(
        chat_id, data.get("agent_id"), data.get("agent_name"), actor=current_actor(data),
    )
    return jsonify(chat)


@chat_bp.route("/<chat_id>/close", methods=["POST"])
def close(chat_id):
    data = json_body()
    return jsonify(get_runtime().chat.close_chat(chat_id, actor=current_actor(data)))


@chat_bp.route("/<chat_id>", methods=["DELETE"])
def delete(chat_id):
    get_runtime().chat.delete_chat(chat_id, actor=current_actor())
    return "", 204
