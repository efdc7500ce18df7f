"""
EntityStore — typed repositories over the local SQLAlchemy database.

One ``Repository`` per collection, all returning plain dicts (fresh copies;
mutating a returned entity never touches the stored one).  Every write
commits its own transaction; an integrity failure rolls back and surfaces
as ``DuplicateKeyError``.

Usage:
    from depot.services.entity_store import EntityStore

    store = EntityStore()
    containers = store.collection("containers")
    c = containers.add({"container_number": "MSKU1234567", "liner": "MSK"})
    containers.update(c["id"], {"liner": "MAEU"})
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from depot.core.exceptions import DuplicateKeyError, NotFoundError, ValidationError
from depot.models import db
from depot.services.collections import (
    COLLECTIONS,
    CollectionSpec,
    apply_transition,
    check_references,
    get_collection,
    merge_changes,
    prepare_new,
)
from depot.workflow.statuses import is_valid_status

logger = logging.getLogger(__name__)


class Repository:
    """CRUD + indexed lookups for one collection."""

    def __init__(self, store: "EntityStore", spec: CollectionSpec):
        self.store = store
        self.spec = spec
        self.model = spec.model

    # ── Reads ────────────────────────────────────────────────────────────

    def _ordered(self):
        return self.model.query.order_by(self.model.created_at, self.model.id)

    def get_all(self) -> list[dict]:
        return [row.to_dict() for row in self._ordered().all()]

    def get_by_id(self, entity_id: str) -> dict | None:
        row = db.session.get(self.model, entity_id)
        return row.to_dict() if row else None

    def require(self, entity_id: str) -> dict:
        entity = self.get_by_id(entity_id)
        if entity is None:
            raise NotFoundError(resource=self.spec.label, resource_id=entity_id)
        return entity

    def get_by_natural_key(self, key: str) -> dict | None:
        if not self.spec.natural_key:
            raise ValidationError(f"{self.spec.name} has no natural key")
        row = self.model.query.filter_by(**{self.spec.natural_key: key}).first()
        return row.to_dict() if row else None

    def find_by(self, **filters) -> list[dict]:
        """Equality lookup; indexed columns are filtered in SQL, the rest in memory."""
        columns = set(self.model.column_fields())
        sql_filters = {k: v for k, v in filters.items() if k in columns}
        extra_filters = {k: v for k, v in filters.items() if k not in columns}
        query = self._ordered()
        if sql_filters:
            query = query.filter_by(**sql_filters)
        rows = [row.to_dict() for row in query.all()]
        if extra_filters:
            rows = [r for r in rows if all(r.get(k) == v for k, v in extra_filters.items())]
        return rows

    def exists(self, entity_id: str) -> bool:
        return db.session.get(self.model, entity_id) is not None

    def count(self) -> int:
        return self.model.query.count()

    # ── Writes ───────────────────────────────────────────────────────────

    def add(self, entity: dict, *, now: datetime | None = None) -> dict:
        """Insert a new entity; stamps timestamps and checks keys + references."""
        data = prepare_new(self.spec, entity, now=now)
        if self.exists(data["id"]):
            raise DuplicateKeyError(self.spec.name, "id", data["id"])
        nk = self.spec.natural_key
        if nk and self.model.query.filter_by(**{nk: data[nk]}).first() is not None:
            raise DuplicateKeyError(self.spec.name, nk, data[nk])
        check_references(self.spec, data, self.store.exists)

        row = self.model()
        row.assign(data)
        db.session.add(row)
        self._commit(nk, data.get(nk) if nk else data["id"])
        logger.debug("Added %s/%s", self.spec.name, data["id"])
        return row.to_dict()

    def update(self, entity_id: str, changes: dict, *, now: datetime | None = None) -> dict:
        """Merge *changes* into the entity; never touches id, created_at or status."""
        row = self._row(entity_id)
        merged = merge_changes(self.spec, row.to_dict(), changes, now=now)
        check_references(self.spec, merged, self.store.exists)
        row.assign(merged)
        self._commit(self.spec.natural_key, merged.get(self.spec.natural_key))
        return row.to_dict()

    def set_status(self, entity_id: str, transition, changes: dict | None = None,
                   *, now: datetime | None = None) -> dict:
        """Apply an engine-approved transition (the only status write path)."""
        row = self._row(entity_id)
        merged = apply_transition(self.spec, row.to_dict(), transition, changes, now=now)
        row.assign(merged)
        self._commit()
        return row.to_dict()

    def upsert(self, entity: dict) -> dict:
        """Store *entity* as given (cache of a record accepted elsewhere)."""
        if not entity.get("id"):
            raise ValidationError(f"{self.spec.label} id is required for upsert")
        if not is_valid_status(self.spec.kind, entity.get("status")):
            raise ValidationError(
                f"Unknown {self.spec.kind} status: {entity.get('status')!r}",
                details={"status": entity.get("status")},
            )
        row = db.session.get(self.model, entity["id"])
        if row is None:
            row = self.model()
            db.session.add(row)
        row.assign(entity)
        self._commit(self.spec.natural_key, entity.get(self.spec.natural_key) if self.spec.natural_key else None)
        return row.to_dict()

    def replace_all(self, entities: list[dict]) -> list[dict]:
        """Replace the whole collection in one transaction."""
        try:
            self.model.query.delete()
            rows = []
            for entity in entities:
                row = self.model()
                row.assign(entity)
                db.session.add(row)
                rows.append(row)
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise DuplicateKeyError(self.spec.name, self.spec.natural_key or "id") from exc
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return [row.to_dict() for row in rows]

    def delete(self, entity_id: str) -> None:
        row = self._row(entity_id)
        db.session.delete(row)
        self._commit()
        logger.debug("Deleted %s/%s", self.spec.name, entity_id)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _row(self, entity_id: str):
        row = db.session.get(self.model, entity_id)
        if row is None:
            raise NotFoundError(resource=self.spec.label, resource_id=entity_id)
        return row

    def _commit(self, field: str | None = None, value=None) -> None:
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise DuplicateKeyError(self.spec.name, field or "id", value) from exc
        except SQLAlchemyError:
            db.session.rollback()
            raise


class EntityStore:
    """Access point for all collection repositories."""

    def __init__(self):
        self._repos = {name: Repository(self, spec) for name, spec in COLLECTIONS.items()}

    def collection(self, name: str) -> Repository:
        repo = self._repos.get(name)
        if repo is None:
            get_collection(name)  # raises the "unknown collection" error
        return repo

    def exists(self, collection: str, entity_id: str) -> bool:
        return self.collection(collection).exists(entity_id)

    def __iter__(self):
        return iter(self._repos.values())
