"""
Settings — singleton values keyed by name, stored in the local database.

Known keys:
    auto_approval_threshold   EOR total at or below which an estimate is
                              approved without liner review (default from
                              the AUTO_APPROVAL_THRESHOLD config value)
"""

import logging

from flask import current_app, has_app_context

from depot.core.exceptions import ValidationError
from depot.models import db
from depot.models.settings import Setting

logger = logging.getLogger(__name__)

AUTO_APPROVAL_KEY = "auto_approval_threshold"
DEFAULT_AUTO_APPROVAL_THRESHOLD = 100.0


class SettingsService:

    def get(self, key: str, default=None):
        row = db.session.get(Setting, key)
        return row.value if row is not None else default

    def all(self) -> dict:
        return {row.key: row.value for row in Setting.query.order_by(Setting.key).all()}

    def set(self, key: str, value) -> dict:
        if not key or not isinstance(key, str):
            raise ValidationError("Setting key is required", details={"key": "required"})
        if key == AUTO_APPROVAL_KEY:
            value = self._threshold(value)
        row = db.session.get(Setting, key)
        if row is None:
            row = Setting(key=key)
            db.session.add(row)
        row.value = value
        db.session.commit()
        logger.info("Setting %s updated", key)
        # SQLite hands JSON numbers back as int when they have no fraction
        return {**row.to_dict(), "value": value}

    def get_auto_approval_threshold(self) -> float:
        default = DEFAULT_AUTO_APPROVAL_THRESHOLD
        if has_app_context():
            default = current_app.config.get("AUTO_APPROVAL_THRESHOLD", default)
        return float(self.get(AUTO_APPROVAL_KEY, default))

    @staticmethod
    def _threshold(value) -> float:
        try:
            threshold = float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                "Auto-approval threshold must be a number",
                details={AUTO_APPROVAL_KEY: "not a number"},
            ) from None
        if threshold < 0:
            raise ValidationError(
                "Auto-approval threshold cannot be negative",
                details={AUTO_APPROVAL_KEY: "negative"},
            )
        return threshold
