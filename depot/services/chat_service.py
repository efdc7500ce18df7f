"""
Live chat commands.

Messages live inside their chat record and are append-only; the only
mutation an existing message ever sees is its ``read`` flag flipping to
True.  Every write is a single-chat write whose new message list is computed
from the freshest copy of that chat, so a guest and an agent writing at the
same time both keep their messages.

``unread_admin`` always equals the number of unread messages from non-agent
senders and is recomputed on every write.
"""

import logging
from datetime import UTC, datetime

from depot.core.exceptions import NotFoundError, ValidationError
from depot.services.code_generator import generate_chat_id, generate_message_id
from depot.workflow import engine
from depot.workflow.statuses import ChatStatus

logger = logging.getLogger(__name__)

SENDERS = {"guest", "user", "agent"}
MAX_MESSAGE_LENGTH = 4000


def count_unread_admin(messages) -> int:
    return sum(1 for m in messages or [] if m.get("sender") != "agent" and not m.get("read"))


class ChatService:

    def __init__(self, reconciler, audit):
        self.reconciler = reconciler
        self.audit = audit

    # ── Reads ────────────────────────────────────────────────────────────

    def get_chat(self, chat_id: str) -> dict:
        chat = self.reconciler.refresh("chats", chat_id)
        if chat is None:
            raise NotFoundError(resource="Chat", resource_id=chat_id)
        return chat

    def list_chats(self, status: str | None = None) -> list[dict]:
        chats = self.reconciler.snapshot("chats")
        if status:
            chats = [c for c in chats if c["status"] == status]
        return chats

    def active_chats(self) -> list[dict]:
        """Active chats, most recently updated first."""
        chats = self.list_chats(ChatStatus.ACTIVE.value)
        return sorted(chats, key=lambda c: c.get("updated_at") or "", reverse=True)

    def unread_count(self, chat_id: str) -> int:
        chat = self.reconciler.get("chats", chat_id)
        return count_unread_admin(chat.get("messages")) if chat else 0

    def total_unread_admin(self) -> int:
        return sum(count_unread_admin(c.get("messages")) for c in self.active_chats())

    # ── Commands ─────────────────────────────────────────────────────────

    def create_chat(self, guest: dict | None = None, user: dict | None = None) -> dict:
        guest = guest or {}
        user = user or {}
        if not user.get("id") and not (guest.get("email") or guest.get("name")):
            raise ValidationError("A chat needs a signed-in user or a guest name/email",
                                  details={"guest": "required"})
        chat = {
            "id": generate_chat_id(),
            "status": ChatStatus.ACTIVE.value,
            "guest_email": guest.get("email"),
            "guest_name": guest.get("name"),
            "user_id": user.get("id"),
            "user_name": user.get("name"),
            "company_name": user.get("company"),
            "assigned_agent": None,
            "messages": [],
            "unread_admin": 0,
        }
        chat = {k: v for k, v in chat.items() if v is not None}
        result = self.reconciler.create("chats", chat)
        self.audit.record("CHAT", result.entity_id, "CREATE", user.get("id") or guest.get("email") or "guest")
        return result.entity

    def get_or_create_chat(self, guest: dict | None = None, user: dict | None = None) -> dict:
        """The participant's active chat, or a new one."""
        active = self.list_chats(ChatStatus.ACTIVE.value)
        if user and user.get("id"):
            match = [c for c in active if c.get("user_id") == user["id"]]
        elif guest and guest.get("email"):
            match = [c for c in active if c.get("guest_email") == guest["email"]]
        else:
            match = []
        if match:
            return match[0]
        return self.create_chat(guest, user)

    def send_message(self, chat_id: str, text: str, sender: str = "guest",
                     *, now: datetime | None = None) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required", details={"text": "required"})
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message text exceeds {MAX_MESSAGE_LENGTH} characters",
                                  details={"text": "too long"})
        if sender not in SENDERS:
            raise ValidationError(f"Unknown sender: {sender!r}", details={"sender": "invalid"})

        message = {
            "id": generate_message_id(),
            "text": text,
            "sender": sender,
            "timestamp": (now or datetime.now(UTC)).isoformat(),
            "read": sender == "agent",
        }

        def append(current: dict) -> dict:
            if current.get("status") != ChatStatus.ACTIVE.value:
                raise ValidationError(f"Chat {chat_id} is closed", details={"status": current.get("status")})
            messages = list(current.get("messages") or []) + [message]
            return {"messages": messages, "unread_admin": count_unread_admin(messages)}

        result = self.reconciler.apply_local_mutation("chats", chat_id, append, now=now)
        if result.degraded:
            logger.warning("Chat %s message stored locally only: %s", chat_id, result.error)
        self.audit.record("CHAT", chat_id, "MESSAGE", sender, details={"message_id": message["id"]})
        return message

    def mark_as_read(self, chat_id: str, actor: str = "system", *, now: datetime | None = None) -> dict:
        def mark(current: dict) -> dict:
            messages = [{**m, "read": True} for m in current.get("messages") or []]
            return {"messages": messages, "unread_admin": count_unread_admin(messages)}

        result = self.reconciler.apply_local_mutation("chats", chat_id, mark, now=now)
        self.audit.record("CHAT", chat_id, "READ", actor)
        return result.entity

    def assign_chat(self, chat_id: str, agent_id: str, agent_name: str | None = None,
                    actor: str = "system") -> dict:
        if not agent_id:
            raise ValidationError("Agent id is required", details={"agent_id": "required"})
        changes = {"assigned_agent": {"id": agent_id, "name": agent_name}}
        result = self.reconciler.apply_local_mutation("chats", chat_id, changes)
        self.audit.record("CHAT", chat_id, "ASSIGN", actor, details={"agent_id": agent_id})
        return result.entity

    def close_chat(self, chat_id: str, actor: str = "system", *, now: datetime | None = None) -> dict:
        current = self.get_chat(chat_id)
        t = engine.transition("chat", current["status"], "close", entity=current, at=now)
        result = self.reconciler.apply_local_mutation("chats", chat_id, {}, transition=t, now=now)
        self.audit.record("CHAT", chat_id, "CLOSE", actor, old_value=t.from_status, new_value=t.to_status)
        return result.entity

    def delete_chat(self, chat_id: str, actor: str = "system") -> None:
        """Administrator delete; only closed chats can go."""
        current = self.get_chat(chat_id)
        if current["status"] != ChatStatus.CLOSED.value:
            raise ValidationError(f"Chat {chat_id} must be closed before it is deleted",
                                  details={"status": current["status"]})
        self.reconciler.remove("chats", chat_id)
        self.audit.record("CHAT", chat_id, "DELETE", actor, old_value=current["status"])
