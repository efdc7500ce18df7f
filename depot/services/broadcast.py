"""
ChangeBroadcaster — "collection X changed, reload" signal for local-only mode.

Two channels, both best-effort and coalescing:
  - a per-collection version counter in ``collection_versions`` of the shared
    local database, polled by other processes (``versions()``);
  - in-process listener callbacks for reconcilers living in the same process.

A client never receives its own notifications.
"""

import logging
import threading
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from depot.models import db
from depot.models.settings import CollectionVersion

logger = logging.getLogger(__name__)


class ChangeBroadcaster:

    def __init__(self):
        self._listeners: list[tuple[str, object]] = []
        self._lock = threading.Lock()

    def listen(self, callback, origin: str):
        """Register ``callback(collection, version)`` for changes not made by *origin*."""
        entry = (origin, callback)
        with self._lock:
            self._listeners.append(entry)

        def unlisten():
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unlisten

    def publish(self, collection: str, origin: str) -> int | None:
        """Bump the collection version and wake every other in-process listener.

        Returns the new version, or None if the counter could not be written
        (in-process listeners are still notified).
        """
        version = None
        try:
            row = db.session.get(CollectionVersion, collection)
            if row is None:
                row = CollectionVersion(collection=collection, version=0)
                db.session.add(row)
            row.version = (row.version or 0) + 1
            row.changed_by = origin
            row.changed_at = datetime.now(UTC)
            db.session.commit()
            version = row.version
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("Change broadcast for '%s' not persisted: %s", collection, exc)

        with self._lock:
            listeners = [cb for who, cb in self._listeners if who != origin]
        for callback in listeners:
            try:
                callback(collection, version)
            except Exception:
                logger.exception("Change listener failed for '%s'", collection)
        return version

    def versions(self) -> dict[str, int]:
        """Current version of every collection that has changed at least once."""
        rows = CollectionVersion.query.all()
        return {row.collection: row.version for row in rows}
