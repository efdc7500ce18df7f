"""
Depot M&R Platform
Settings and change-notification models.

Models:
    - Setting:           singleton values keyed by name (e.g. autoApprovalThreshold)
    - CollectionVersion: per-collection change counter shared by every client
                         of the same local database (cross-tab reload signal)
"""

from datetime import UTC, datetime

from depot.models import db


class Setting(db.Model):
    __tablename__ = "settings"

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CollectionVersion(db.Model):
    __tablename__ = "collection_versions"

    collection = db.Column(db.String(40), primary_key=True)
    version = db.Column(db.Integer, nullable=False, default=0)
    changed_by = db.Column(db.String(64), nullable=True, comment="client id of the last writer")
    changed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self):
        return f"<CollectionVersion {self.collection} v{self.version}>"
