"""
SyncReconciler — one client's live view of every collection.

Holds the in-memory state that subscribers read, applies local mutations
optimistically, and keeps that state consistent with other clients.

Local-only mode (no mirror):
    mutation → in-memory update → EntityStore write (rolled back in memory on
    failure) → same-process subscribers → ChangeBroadcaster.  Other clients
    react to the broadcast by reloading the whole collection from storage.

Shared mode (mirror given):
    mutation → validated against the current snapshot → in-memory update →
    ``RemoteMirror.write_entity``.  Inbound snapshots replace the collection
    wholesale except for entities with unacknowledged local writes.  If the
    backend is down the write lands in the local store, the entity is kept
    pending and the result says ``degraded=True``; ``reconcile()`` pushes
    pending entities once the backend is back.

Single-entity writes are used for every one-entity mutation, so concurrent
clients never overwrite each other's records.  Updates may pass a callable
``changes(current) -> dict`` that is evaluated against the freshest state
(used for chat message appends).
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from depot.core.exceptions import BackendUnavailableError, NotFoundError
from depot.services.collections import (
    COLLECTIONS,
    apply_transition,
    check_references,
    find_duplicate,
    get_collection,
    merge_changes,
    prepare_new,
)
from depot.workflow.statuses import is_valid_status

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Outcome of a create / update / transition / delete."""

    collection: str
    entity_id: str
    entity: dict | None = None
    remote: bool = False          # acknowledged by the shared backend
    degraded: bool = False        # fell back to local persistence
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "id": self.entity_id,
            "entity": self.entity,
            "remote": self.remote,
            "degraded": self.degraded,
            "error": self.error,
        }


class SyncReconciler:

    def __init__(self, store, *, mirror=None, broadcaster=None, client_id: str | None = None):
        self.store = store
        self.mirror = mirror
        self.broadcaster = broadcaster
        self.client_id = client_id or uuid.uuid4().hex[:12]

        self._state: dict[str, dict[str, dict]] = {}
        self._subscribers: dict[str, list] = {}
        self._pending: dict[str, dict[str, dict | None]] = {}
        self._seen_versions: dict[str, int] = {}
        self._detach: list = []
        self._lock = threading.RLock()
        self._started = False

    @property
    def shared(self) -> bool:
        return self.mirror is not None

    @property
    def mode(self) -> str:
        return "shared" if self.shared else "local"

    def _log_extra(self, collection: str | None = None, entity_id: str | None = None) -> dict:
        extra = {"client_id": self.client_id, "sync_mode": self.mode}
        if collection:
            extra["collection"] = collection
        if entity_id:
            extra["entity_id"] = entity_id
        return extra

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Load every collection and attach to the change sources."""
        with self._lock:
            if self._started:
                return
            for name in COLLECTIONS:
                self._attach(name)
            if self.broadcaster is not None:
                self._detach.append(self.broadcaster.listen(self._on_broadcast, origin=self.client_id))
                self._seen_versions = self.broadcaster.versions()
            self._started = True
            logger.info("Sync reconciler %s started in %s mode", self.client_id, self.mode, extra=self._log_extra())

    def stop(self) -> None:
        with self._lock:
            for detach in self._detach:
                detach()
            self._detach.clear()
            self._started = False

    def _attach(self, collection: str) -> None:
        if not self.shared:
            self._state[collection] = {e["id"]: e for e in self.store.collection(collection).get_all()}
            return
        try:
            self._detach.append(self.mirror.subscribe(collection, partial(self.apply_remote_snapshot, collection)))
        except BackendUnavailableError as exc:
            logger.warning("Shared backend unavailable, serving '%s' from local store: %s", collection, exc,
                           extra=self._log_extra(collection))
            self._state[collection] = {e["id"]: e for e in self.store.collection(collection).get_all()}

    def _bucket(self, collection: str) -> dict:
        get_collection(collection)
        if collection not in self._state:
            self._attach(collection)
        return self._state.setdefault(collection, {})

    # ── Reads ────────────────────────────────────────────────────────────

    def snapshot(self, collection: str) -> list[dict]:
        with self._lock:
            return copy.deepcopy(list(self._bucket(collection).values()))

    def get(self, collection: str, entity_id: str) -> dict | None:
        with self._lock:
            entity = self._bucket(collection).get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def require(self, collection: str, entity_id: str) -> dict:
        entity = self.get(collection, entity_id)
        if entity is None:
            raise NotFoundError(resource=get_collection(collection).label, resource_id=entity_id)
        return entity

    def refresh(self, collection: str, entity_id: str) -> dict | None:
        """Re-read one entity from its backend so decisions use the latest status."""
        with self._lock:
            bucket = self._bucket(collection)
            if entity_id in self._pending.get(collection, {}):
                latest = self._pending[collection][entity_id]
            elif self.shared:
                try:
                    latest = self.mirror.read_entity(collection, entity_id)
                except BackendUnavailableError as exc:
                    logger.debug("Refresh of %s/%s served from memory: %s", collection, entity_id, exc)
                    latest = bucket.get(entity_id)
            else:
                latest = self.store.collection(collection).get_by_id(entity_id)

            if latest is not None and not is_valid_status(get_collection(collection).kind, latest.get("status")):
                logger.warning(
                    "Dropping %s/%s with invalid status %r", collection, entity_id, latest.get("status"),
                    extra=self._log_extra(collection, entity_id),
                )
                latest = None
            if latest is None:
                bucket.pop(entity_id, None)
                return None
            bucket[entity_id] = latest
            return copy.deepcopy(latest)

    def subscribe(self, collection: str, callback):
        """Call ``callback(entities)`` now and after every change of *collection*."""
        with self._lock:
            self._subscribers.setdefault(collection, []).append(callback)
            callback(self.snapshot(collection))

        def unsubscribe():
            with self._lock:
                subs = self._subscribers.get(collection, [])
                if callback in subs:
                    subs.remove(callback)

        return unsubscribe

    def pending(self) -> dict[str, list[str]]:
        with self._lock:
            return {c: sorted(items) for c, items in self._pending.items() if items}

    def _exists(self, collection: str, entity_id: str) -> bool:
        if not self.shared:
            return self.store.exists(collection, entity_id)
        return entity_id in self._bucket(collection)

    # ── Writes ───────────────────────────────────────────────────────────

    def create(self, collection: str, entity: dict, *, now: datetime | None = None) -> MutationResult:
        spec = get_collection(collection)
        with self._lock:
            bucket = self._bucket(collection)
            if not self.shared:
                stored = self.store.collection(collection).add(entity, now=now)
                bucket[stored["id"]] = stored
                self._changed(collection)
                return MutationResult(collection, stored["id"], copy.deepcopy(stored))

            prepared = prepare_new(spec, entity, now=now)
            find_duplicate(spec, prepared, bucket.values())
            check_references(spec, prepared, self._exists)
            bucket[prepared["id"]] = prepared
            return self._push(collection, prepared)

    def apply_local_mutation(self, collection: str, entity_id: str, changes, *,
                             transition=None, now: datetime | None = None) -> MutationResult:
        """Update one entity (generic merge, or a status change when *transition* is given).

        *changes* may be a dict or ``callable(current) -> dict``.
        Validation errors leave the in-memory state untouched.
        """
        spec = get_collection(collection)
        with self._lock:
            bucket = self._bucket(collection)
            current = self.refresh(collection, entity_id)
            if current is None:
                raise NotFoundError(resource=spec.label, resource_id=entity_id)

            resolved = changes(copy.deepcopy(current)) if callable(changes) else (changes or {})
            if transition is not None:
                merged = apply_transition(spec, current, transition, resolved, now=now)
            else:
                merged = merge_changes(spec, current, resolved, now=now)
                check_references(spec, merged, self._exists)

            previous = bucket.get(entity_id)
            bucket[entity_id] = merged

            if not self.shared:
                repo = self.store.collection(collection)
                try:
                    if transition is not None:
                        stored = repo.set_status(entity_id, transition, resolved, now=now)
                    else:
                        stored = repo.update(entity_id, resolved, now=now)
                except Exception:
                    bucket[entity_id] = previous
                    raise
                bucket[entity_id] = stored
                self._changed(collection)
                return MutationResult(collection, entity_id, copy.deepcopy(stored))

            return self._push(collection, merged)

    def remove(self, collection: str, entity_id: str) -> MutationResult:
        spec = get_collection(collection)
        with self._lock:
            bucket = self._bucket(collection)
            if entity_id not in bucket and self.refresh(collection, entity_id) is None:
                raise NotFoundError(resource=spec.label, resource_id=entity_id)

            if not self.shared:
                self.store.collection(collection).delete(entity_id)
                bucket.pop(entity_id, None)
                self._changed(collection)
                return MutationResult(collection, entity_id)

            previous = bucket.pop(entity_id)
            self._pending.get(collection, {}).pop(entity_id, None)
            try:
                self.mirror.delete_entity(collection, entity_id)
            except BackendUnavailableError as exc:
                logger.warning("Delete of %s/%s kept pending: %s", collection, entity_id, exc,
                               extra=self._log_extra(collection, entity_id))
                repo = self.store.collection(collection)
                if repo.exists(entity_id):
                    repo.delete(entity_id)
                self._pending.setdefault(collection, {})[entity_id] = None
                self._state.get(collection, {}).pop(entity_id, None)
                self._notify(collection)
                return MutationResult(collection, entity_id, previous, degraded=True, error=str(exc))
            self._notify(collection)
            return MutationResult(collection, entity_id, remote=True)

    def _push(self, collection: str, entity: dict) -> MutationResult:
        """Shared-mode write of one entity already placed in memory."""
        entity_id = entity["id"]
        # An older pending copy must not be overlaid on the snapshot this write triggers
        self._pending.get(collection, {}).pop(entity_id, None)
        try:
            self.mirror.write_entity(collection, entity_id, entity)
        except BackendUnavailableError as exc:
            logger.warning("Shared backend write of %s/%s failed, kept locally: %s", collection, entity_id, exc,
                           extra=self._log_extra(collection, entity_id))
            self.store.collection(collection).upsert(entity)
            self._pending.setdefault(collection, {})[entity_id] = copy.deepcopy(entity)
            self._state.setdefault(collection, {})[entity_id] = entity
            self._notify(collection)
            return MutationResult(collection, entity_id, copy.deepcopy(entity), degraded=True, error=str(exc))
        self._notify(collection)
        return MutationResult(collection, entity_id, copy.deepcopy(entity), remote=True)

    def bulk_load(self, collection: str, entities: list[dict], *, now: datetime | None = None) -> int:
        """Seed a collection.  A whole-collection write is only used while the
        target is empty; otherwise each entity is written on its own."""
        spec = get_collection(collection)
        prepared = [prepare_new(spec, e, now=now) for e in entities]
        with self._lock:
            bucket = self._bucket(collection)
            if not self.shared:
                repo = self.store.collection(collection)
                for entity in prepared:
                    stored = repo.add(entity, now=now)
                    bucket[stored["id"]] = stored
                self._changed(collection)
                return len(prepared)

            existing = self.mirror.read_collection(collection)
            if not existing:
                self.mirror.write_collection(collection, prepared)
            else:
                for entity in prepared:
                    self.mirror.write_entity(collection, entity["id"], entity)
            for entity in prepared:
                bucket[entity["id"]] = entity
            self._notify(collection)
            return len(prepared)

    # ── Inbound changes ──────────────────────────────────────────────────

    def apply_remote_snapshot(self, collection: str, entities) -> bool:
        """Replace *collection* with a snapshot from the shared backend.

        Entities with an invalid status are dropped; pending local writes
        stay overlaid.  Returns True if the visible state changed.
        """
        spec = get_collection(collection)
        incoming: dict[str, dict] = {}
        for entity in entities or []:
            if not isinstance(entity, dict) or not entity.get("id"):
                logger.warning("Dropping malformed entry from '%s' snapshot", collection,
                               extra=self._log_extra(collection))
                continue
            if not is_valid_status(spec.kind, entity.get("status")):
                logger.warning(
                    "Dropping %s/%s with invalid status %r",
                    collection, entity.get("id"), entity.get("status"),
                    extra=self._log_extra(collection, entity.get("id")),
                )
                continue
            incoming[entity["id"]] = copy.deepcopy(entity)

        with self._lock:
            for entity_id, entity in self._pending.get(collection, {}).items():
                if entity is None:
                    incoming.pop(entity_id, None)
                else:
                    incoming[entity_id] = copy.deepcopy(entity)

            if self._state.get(collection) == incoming:
                return False
            self._state[collection] = incoming
            self._notify(collection)
            return True

    def reload(self, collection: str | None = None) -> None:
        """Drop the in-memory view and read it back from the backend."""
        names = [collection] if collection else list(COLLECTIONS)
        for name in names:
            if self.shared:
                try:
                    self.apply_remote_snapshot(name, self.mirror.read_collection(name))
                except BackendUnavailableError as exc:
                    logger.warning("Reload of '%s' skipped: %s", name, exc, extra=self._log_extra(name))
                continue
            fresh = {e["id"]: e for e in self.store.collection(name).get_all()}
            with self._lock:
                if self._state.get(name) != fresh:
                    self._state[name] = fresh
                    self._notify(name)

    def poll_changes(self) -> list[str]:
        """Reload the collections other clients changed since the last poll."""
        if self.broadcaster is None:
            return []
        versions = self.broadcaster.versions()
        changed = [c for c, v in versions.items() if self._seen_versions.get(c) != v]
        self._seen_versions.update(versions)
        for name in changed:
            if name in COLLECTIONS:
                self.reload(name)
        return changed

    def _on_broadcast(self, collection: str, version: int | None) -> None:
        if version is not None:
            self._seen_versions[collection] = version
        if collection in COLLECTIONS:
            self.reload(collection)

    def reconcile(self) -> int:
        """Push pending writes to the shared backend (or reload, in local mode).

        Returns the number of writes still pending.
        """
        if not self.shared:
            self.reload()
            return 0
        with self._lock:
            for collection in list(self._pending):
                for entity_id, entity in list(self._pending[collection].items()):
                    self._pending[collection].pop(entity_id, None)
                    try:
                        if entity is None:
                            self.mirror.delete_entity(collection, entity_id)
                        else:
                            self.mirror.write_entity(collection, entity_id, entity)
                    except BackendUnavailableError as exc:
                        self._pending[collection][entity_id] = entity
                        logger.warning("Reconcile stopped, backend still unavailable: %s", exc,
                                       extra=self._log_extra(collection, entity_id))
                        return sum(len(items) for items in self._pending.values())
                    logger.info("Reconciled %s/%s with shared backend", collection, entity_id,
                                extra=self._log_extra(collection, entity_id))
            self._pending = {c: items for c, items in self._pending.items() if items}
        self.reload()
        return 0

    # ── Notification ─────────────────────────────────────────────────────

    def _changed(self, collection: str) -> None:
        """Local-mode post-write: notify this client, then other clients."""
        self._notify(collection)
        if self.broadcaster is not None:
            version = self.broadcaster.publish(collection, origin=self.client_id)
            if version is not None:
                self._seen_versions[collection] = version

    def _notify(self, collection: str) -> None:
        subscribers = list(self._subscribers.get(collection, []))
        if not subscribers:
            return
        snapshot = self.snapshot(collection)
        for callback in subscribers:
            try:
                callback(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("Subscriber failed for '%s'", collection)
