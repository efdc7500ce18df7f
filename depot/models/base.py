"""
EntityModel — Abstract base class for every workflow collection.

All depot entities share the same envelope:
  - id (string, immutable, unique within its collection)
  - status (enum value specific to the entity kind)
  - created_by / created_at / updated_at
  - extra JSON column for kind-specific fields that are not indexed

Subclasses list their indexed columns in ``COLUMN_FIELDS``; everything else
an entity carries lands in ``extra``.  ``to_dict()`` flattens both back into a
single dict, so callers never see the split.
"""

import copy
from datetime import UTC, datetime

from depot.models import db

ENVELOPE_FIELDS = ("id", "status", "created_by", "created_at", "updated_at")


def parse_timestamp(value):
    """Coerce an ISO string / datetime into an aware UTC datetime (or None)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value):
    dt = parse_timestamp(value)
    return dt.isoformat() if dt else None


class EntityModel(db.Model):
    """Abstract base for depot collections."""
    __abstract__ = True

    # Indexed, kind-specific columns (in addition to the envelope)
    COLUMN_FIELDS: tuple = ()

    id = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(30), nullable=True, index=True)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    extra = db.Column(db.JSON, nullable=False, default=dict)

    @classmethod
    def column_fields(cls) -> tuple:
        return ENVELOPE_FIELDS + tuple(cls.COLUMN_FIELDS)

    def assign(self, data: dict) -> None:
        """Write *data* onto the row: known fields to columns, rest to extra."""
        extra = dict(self.extra or {})
        for key, value in data.items():
            if key in ("created_at", "updated_at"):
                setattr(self, key, parse_timestamp(value))
            elif key in self.column_fields():
                setattr(self, key, copy.deepcopy(value))
            else:
                extra[key] = copy.deepcopy(value)
        # New dict object so SQLAlchemy detects the JSON change
        self.extra = extra

    def to_dict(self) -> dict:
        out = copy.deepcopy(self.extra or {})
        for key in self.column_fields():
            value = getattr(self, key)
            if key in ("created_at", "updated_at"):
                value = format_timestamp(value)
            elif value is None:
                # Unset optional columns are omitted, like absent JSON keys
                continue
            out[key] = copy.deepcopy(value)
        return out

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} status={self.status}>"
