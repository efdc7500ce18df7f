"""
Live chat tests.

Covers:
    - get-or-create per guest / signed-in user
    - append-only messages, unread counter for agents
    - mark as read, assign, close, delete (closed only)
"""

import pytest

from depot.core.exceptions import IllegalTransitionError, NotFoundError, ValidationError

GUEST = {"email": "guest@example.com", "name": "Ayse"}


class TestOpenChat:

    def test_get_or_create_reuses_active_chat(self, chat):
        first = chat.get_or_create_chat(guest=GUEST)
        again = chat.get_or_create_chat(guest=GUEST)
        assert first["id"] == again["id"]
        assert first["status"] == "active"
        assert first["id"].startswith("chat_")

    def test_signed_in_user_gets_own_chat(self, chat):
        guest_chat = chat.get_or_create_chat(guest=GUEST)
        user_chat = chat.get_or_create_chat(user={"id": "u-42", "name": "Liner Ops", "company": "MSK"})
        assert user_chat["id"] != guest_chat["id"]
        assert user_chat["company_name"] == "MSK"

    def test_closed_chat_is_not_reused(self, chat):
        first = chat.get_or_create_chat(guest=GUEST)
        chat.close_chat(first["id"])
        assert chat.get_or_create_chat(guest=GUEST)["id"] != first["id"]

    def test_participant_required(self, chat):
        with pytest.raises(ValidationError):
            chat.create_chat()


class TestMessages:

    def test_guest_messages_count_as_unread(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        msg = chat.send_message(c["id"], "  Is MSKU1234567 washed yet?  ", "guest")
        assert msg["text"] == "Is MSKU1234567 washed yet?"
        assert msg["read"] is False
        chat.send_message(c["id"], "And certified?", "guest")

        assert chat.unread_count(c["id"]) == 2
        assert chat.get_chat(c["id"])["unread_admin"] == 2

    def test_agent_messages_are_read(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        msg = chat.send_message(c["id"], "Yes, certificate issued", "agent")
        assert msg["read"] is True
        assert chat.unread_count(c["id"]) == 0

    def test_messages_keep_order(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        for text, sender in (("one", "guest"), ("two", "agent"), ("three", "guest")):
            chat.send_message(c["id"], text, sender)
        assert [m["text"] for m in chat.get_chat(c["id"])["messages"]] == ["one", "two", "three"]

    def test_mark_as_read(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        chat.send_message(c["id"], "hello", "guest")
        updated = chat.mark_as_read(c["id"])
        assert updated["unread_admin"] == 0
        assert all(m["read"] for m in updated["messages"])

    def test_total_unread_counts_active_chats(self, chat):
        a = chat.get_or_create_chat(guest=GUEST)
        b = chat.get_or_create_chat(guest={"email": "other@example.com"})
        chat.send_message(a["id"], "hi", "guest")
        chat.send_message(b["id"], "hi", "guest")
        chat.send_message(b["id"], "anyone?", "guest")
        assert chat.total_unread_admin() == 3

        chat.close_chat(b["id"])
        assert chat.total_unread_admin() == 1

    def test_empty_text_rejected(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        with pytest.raises(ValidationError):
            chat.send_message(c["id"], "   ", "guest")

    def test_unknown_sender_rejected(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        with pytest.raises(ValidationError):
            chat.send_message(c["id"], "hi", "robot")

    def test_closed_chat_rejects_messages(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        chat.close_chat(c["id"])
        with pytest.raises(ValidationError, match="closed"):
            chat.send_message(c["id"], "still there?", "guest")

    def test_unknown_chat(self, chat):
        with pytest.raises(NotFoundError):
            chat.send_message("chat_missing", "hi", "guest")


class TestLifecycle:

    def test_assign(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        assigned = chat.assign_chat(c["id"], "agent-7", "Deniz", actor="supervisor")
        assert assigned["assigned_agent"] == {"id": "agent-7", "name": "Deniz"}

    def test_close_twice(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        closed = chat.close_chat(c["id"])
        assert closed["status"] == "closed"
        assert "closed_at" in closed
        with pytest.raises(IllegalTransitionError):
            chat.close_chat(c["id"])

    def test_delete_requires_closed(self, chat):
        c = chat.get_or_create_chat(guest=GUEST)
        with pytest.raises(ValidationError, match="closed"):
            chat.delete_chat(c["id"])

        chat.close_chat(c["id"])
        chat.delete_chat(c["id"], actor="admin")
        with pytest.raises(NotFoundError):
            chat.get_chat(c["id"])

    def test_active_chats_newest_first(self, chat):
        a = chat.get_or_create_chat(guest=GUEST)
        b = chat.get_or_create_chat(guest={"email": "other@example.com"})
        chat.send_message(a["id"], "bump", "guest")
        assert [c["id"] for c in chat.active_chats()] == [a["id"], b["id"]]
