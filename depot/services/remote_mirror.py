"""
RemoteMirror — shared real-time backend seen as live collection snapshots.

Contract:
    subscribe(collection, on_snapshot)  → unsubscribe callable
        ``on_snapshot(entities)`` fires immediately with the current contents
        and again after every change made by any client.
    read_collection / read_entity
    write_entity(collection, id, entity)       one-entity write (preferred)
    write_collection(collection, entities)     whole-collection replace
    delete_entity(collection, id)

Implementations:
    RedisMirror   one hash per collection (``depot:<collection>``, field = id,
                  value = JSON) and a pub/sub channel per collection
                  (``depot:changes:<collection>``) announcing changes.
    MemoryMirror  in-process backend for development and tests; several
                  reconcilers may share one instance.

Any backend failure is raised as ``BackendUnavailableError``.
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod

import redis
from redis.exceptions import RedisError

from depot.core.exceptions import BackendUnavailableError

logger = logging.getLogger(__name__)


def _sort_key(entity: dict):
    return (entity.get("created_at") or "", entity.get("id") or "")


class RemoteMirror(ABC):
    """Subscribe/read/write contract of the shared backend."""

    @abstractmethod
    def subscribe(self, collection: str, on_snapshot):
        ...

    @abstractmethod
    def read_collection(self, collection: str) -> list[dict]:
        ...

    @abstractmethod
    def read_entity(self, collection: str, entity_id: str) -> dict | None:
        ...

    @abstractmethod
    def write_entity(self, collection: str, entity_id: str, entity: dict) -> None:
        ...

    @abstractmethod
    def write_collection(self, collection: str, entities: list[dict]) -> None:
        ...

    @abstractmethod
    def delete_entity(self, collection: str, entity_id: str) -> None:
        ...

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Release connections / listener threads."""


# ── Redis ────────────────────────────────────────────────────────────────────


class RedisMirror(RemoteMirror):
    """Shared backend on Redis hashes + pub/sub."""

    def __init__(self, url: str | None = None, *, prefix: str = "depot", client=None):
        self._redis = client or redis.Redis.from_url(url, decode_responses=True)
        self._prefix = prefix
        self._handlers: dict[str, list] = {}
        self._lock = threading.Lock()
        self._pubsub = None
        self._thread = None

    def _key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self._prefix}:changes:{collection}"

    def _announce(self, pipe, collection: str, op: str, entity_id: str | None = None) -> None:
        pipe.publish(self._channel(collection), json.dumps({"op": op, "id": entity_id}))

    # ── Reads ────────────────────────────────────────────────────────────

    def read_collection(self, collection: str) -> list[dict]:
        try:
            raw = self._redis.hgetall(self._key(collection))
        except RedisError as exc:
            raise BackendUnavailableError("read", collection, exc) from exc
        entities = []
        for field, value in raw.items():
            try:
                entities.append(json.loads(value))
            except (json.JSONDecodeError, TypeError):
                logger.warning("Skipping undecodable %s/%s in shared backend", collection, field,
                               extra={"collection": collection, "entity_id": field, "sync_mode": "shared"})
        return sorted(entities, key=_sort_key)

    def read_entity(self, collection: str, entity_id: str) -> dict | None:
        try:
            raw = self._redis.hget(self._key(collection), entity_id)
        except RedisError as exc:
            raise BackendUnavailableError("read", collection, exc) from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Undecodable %s/%s in shared backend", collection, entity_id,
                           extra={"collection": collection, "entity_id": entity_id, "sync_mode": "shared"})
            return None

    # ── Writes ───────────────────────────────────────────────────────────

    def write_entity(self, collection: str, entity_id: str, entity: dict) -> None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(self._key(collection), entity_id, json.dumps(entity, default=str))
            self._announce(pipe, collection, "put", entity_id)
            pipe.execute()
        except RedisError as exc:
            raise BackendUnavailableError("write", collection, exc) from exc

    def write_collection(self, collection: str, entities: list[dict]) -> None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(self._key(collection))
            if entities:
                pipe.hset(
                    self._key(collection),
                    mapping={e["id"]: json.dumps(e, default=str) for e in entities},
                )
            self._announce(pipe, collection, "replace")
            pipe.execute()
        except RedisError as exc:
            raise BackendUnavailableError("write", collection, exc) from exc

    def delete_entity(self, collection: str, entity_id: str) -> None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.hdel(self._key(collection), entity_id)
            self._announce(pipe, collection, "delete", entity_id)
            pipe.execute()
        except RedisError as exc:
            raise BackendUnavailableError("delete", collection, exc) from exc

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, collection: str, on_snapshot):
        on_snapshot(self.read_collection(collection))
        with self._lock:
            self._handlers.setdefault(collection, []).append(on_snapshot)
            if self._pubsub is None:
                try:
                    self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
                    self._pubsub.psubscribe(**{self._channel("*"): self._on_message})
                    self._thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)
                except RedisError as exc:
                    self._handlers[collection].remove(on_snapshot)
                    self._pubsub = None
                    raise BackendUnavailableError("subscribe", collection, exc) from exc

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(collection, [])
                if on_snapshot in handlers:
                    handlers.remove(on_snapshot)

        return unsubscribe

    def _on_message(self, message) -> None:
        channel = message.get("channel") or ""
        collection = channel.rsplit(":", 1)[-1]
        with self._lock:
            handlers = list(self._handlers.get(collection, []))
        if not handlers:
            return
        try:
            snapshot = self.read_collection(collection)
        except BackendUnavailableError as exc:
            logger.warning("Change on '%s' not delivered: %s", collection, exc,
                           extra={"collection": collection, "sync_mode": "shared"})
            return
        for handler in handlers:
            try:
                handler(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("Snapshot handler failed for '%s'", collection)

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False

    def close(self) -> None:
        with self._lock:
            if self._thread is not None:
                self._thread.stop()
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None
            self._handlers.clear()


# ── In-memory ────────────────────────────────────────────────────────────────


class MemoryMirror(RemoteMirror):
    """Process-local shared backend; notifications are delivered synchronously."""

    def __init__(self):
        self._data: dict[str, dict[str, dict]] = {}
        self._handlers: dict[str, list] = {}
        self._lock = threading.RLock()
        self._available = True

    def set_available(self, available: bool) -> None:
        """Simulate an outage (``False``) or recovery (``True``)."""
        self._available = available

    def _check(self, operation: str, collection: str) -> None:
        if not self._available:
            raise BackendUnavailableError(operation, collection, ConnectionError("backend offline"))

    def read_collection(self, collection: str) -> list[dict]:
        self._check("read", collection)
        with self._lock:
            entities = copy.deepcopy(list(self._data.get(collection, {}).values()))
        return sorted(entities, key=_sort_key)

    def read_entity(self, collection: str, entity_id: str) -> dict | None:
        self._check("read", collection)
        with self._lock:
            entity = self._data.get(collection, {}).get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def write_entity(self, collection: str, entity_id: str, entity: dict) -> None:
        self._check("write", collection)
        with self._lock:
            self._data.setdefault(collection, {})[entity_id] = copy.deepcopy(entity)
        self._notify(collection)

    def write_collection(self, collection: str, entities: list[dict]) -> None:
        self._check("write", collection)
        with self._lock:
            self._data[collection] = {e["id"]: copy.deepcopy(e) for e in entities}
        self._notify(collection)

    def delete_entity(self, collection: str, entity_id: str) -> None:
        self._check("delete", collection)
        with self._lock:
            self._data.get(collection, {}).pop(entity_id, None)
        self._notify(collection)

    def subscribe(self, collection: str, on_snapshot):
        on_snapshot(self.read_collection(collection))
        with self._lock:
            self._handlers.setdefault(collection, []).append(on_snapshot)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(collection, [])
                if on_snapshot in handlers:
                    handlers.remove(on_snapshot)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        with self._lock:
            handlers = list(self._handlers.get(collection, []))
            snapshot = sorted(self._data.get(collection, {}).values(), key=_sort_key)
            snapshot = copy.deepcopy(snapshot)
        for handler in handlers:
            handler(copy.deepcopy(snapshot))

    def ping(self) -> bool:
        return self._available

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()


def build_mirror(url: str | None) -> RemoteMirror:
    """Mirror for *url*: ``memory://`` gives a MemoryMirror, anything else Redis."""
    if not url or url.startswith("memory://"):
        logger.info("Shared backend: in-memory mirror")
        return MemoryMirror()
    logger.info("Shared backend: Redis at %s", url.split("@")[-1])
    return RedisMirror(url)
