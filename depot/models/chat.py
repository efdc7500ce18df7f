"""
Depot M&R Platform
Live chat model.

Messages are owned by their chat and stored inline (ordered by insertion);
they are never removed or reordered, only their ``read`` flag flips.
"""

from depot.models import db
from depot.models.base import EntityModel


class Chat(EntityModel):
    __tablename__ = "chats"
    COLUMN_FIELDS = ("guest_email", "user_id", "assigned_agent", "messages", "unread_admin")

    guest_email = db.Column(db.String(255), nullable=True, index=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    assigned_agent = db.Column(db.JSON, nullable=True, comment="{id, name}")
    messages = db.Column(db.JSON, nullable=False, default=list)
    unread_admin = db.Column(db.Integer, nullable=False, default=0)
