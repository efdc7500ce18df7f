"""
Collection registry and backend-agnostic write rules.

Both persistence paths (local store and shared backend) go through the same
helpers here, so an entity accepted by one backend is accepted by the other:

  - prepare_new():        id / status / timestamps for a new entity
  - merge_changes():      generic partial update (never id, created_at, status)
  - apply_transition():   the only path that changes ``status``
  - check_references():   container_id / survey_id / eor_id / repair_order_id
  - find_duplicate():     natural-key uniqueness against a snapshot
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from depot.core.exceptions import (
    DuplicateKeyError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from depot.models.base import parse_timestamp
from depot.models.chat import Chat
from depot.models.yard import (
    Container,
    EstimateOfRepair,
    PreInspection,
    RepairOrder,
    ShuntingRequest,
    StackingRequest,
    Survey,
    WashingOrder,
)
from depot.workflow.statuses import INITIAL_STATUS, is_valid_status

IMMUTABLE_FIELDS = ("id", "created_at")


@dataclass(frozen=True)
class CollectionSpec:
    """Static description of one entity collection."""

    name: str
    kind: str
    entity_type: str          # label used in the audit trail
    label: str                # human-readable name used in error messages
    model: type
    natural_key: str | None = None
    references: dict = field(default_factory=dict)   # field -> collection


COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in (
        CollectionSpec("containers", "container", "CONTAINER", "Container", Container,
                       natural_key="container_number"),
        CollectionSpec("washing_orders", "washing_order", "WASHING_ORDER", "Washing order", WashingOrder,
                       references={"container_id": "containers"}),
        CollectionSpec("surveys", "survey", "SURVEY", "Survey", Survey,
                       references={"container_id": "containers"}),
        CollectionSpec("eors", "eor", "EOR", "EOR", EstimateOfRepair,
                       references={"container_id": "containers", "survey_id": "surveys"}),
        CollectionSpec("repair_orders", "repair_order", "REPAIR_ORDER", "Repair order", RepairOrder,
                       references={"container_id": "containers", "eor_id": "eors"}),
        CollectionSpec("shunting_requests", "shunting_request", "SHUNTING_REQUEST", "Shunting request",
                       ShuntingRequest, references={"container_id": "containers"}),
        CollectionSpec("pre_inspections", "pre_inspection", "PRE_INSPECTION", "Pre-inspection", PreInspection,
                       references={"container_id": "containers", "repair_order_id": "repair_orders"}),
        CollectionSpec("stacking_requests", "stacking_request", "STACKING_REQUEST", "Stacking request",
                       StackingRequest, references={"container_id": "containers"}),
        CollectionSpec("chats", "chat", "CHAT", "Chat", Chat),
    )
}

# URL slugs used by the HTTP API
SLUGS = {name.replace("_", "-"): name for name in COLLECTIONS}


def get_collection(name: str) -> CollectionSpec:
    spec = COLLECTIONS.get(name)
    if spec is None:
        raise ValidationError(f"Unknown collection: {name!r}", details={"collection": name})
    return spec


def now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


# ── Write rules ──────────────────────────────────────────────────────────────


def prepare_new(spec: CollectionSpec, entity: dict, *, now: datetime | None = None) -> dict:
    """Return a fresh copy of *entity* ready to be stored as a new record."""
    if not isinstance(entity, dict):
        raise ValidationError(f"{spec.label} must be an object")
    data = copy.deepcopy(entity)
    data["id"] = str(data.get("id") or new_id())

    status = data.get("status") or INITIAL_STATUS[spec.kind].value
    status = getattr(status, "value", status)
    if not is_valid_status(spec.kind, status):
        raise ValidationError(f"Unknown {spec.kind} status: {status!r}", details={"status": status})
    data["status"] = status

    if spec.natural_key and not data.get(spec.natural_key):
        raise ValidationError(
            f"{spec.label} {spec.natural_key} is required",
            details={spec.natural_key: "required"},
        )
    for ref_field in spec.references:
        if not data.get(ref_field):
            raise ValidationError(f"{spec.label} {ref_field} is required", details={ref_field: "required"})

    stamp = now_iso(now)
    data["created_at"] = data.get("created_at") or stamp
    data["updated_at"] = stamp
    return data


def _bump(current: dict, now: datetime | None) -> str:
    """Next updated_at: the clock, but never earlier than the stored value."""
    candidate = parse_timestamp(now or datetime.now(UTC))
    previous = parse_timestamp(current.get("updated_at"))
    if previous is not None and previous > candidate:
        candidate = previous
    return candidate.isoformat()


def merge_changes(spec: CollectionSpec, current: dict, changes: dict, *, now: datetime | None = None) -> dict:
    """Generic partial update.  Rejects status and identity changes."""
    if not isinstance(changes, dict):
        raise ValidationError("Changes must be an object")
    if "status" in changes and changes["status"] != current.get("status"):
        raise ValidationError(
            f"{spec.label} status can only change through a workflow event",
            details={"status": "use a workflow event"},
        )
    for key in IMMUTABLE_FIELDS:
        if key in changes and changes[key] != current.get(key):
            raise ValidationError(f"{spec.label} {key} is immutable", details={key: "immutable"})

    merged = copy.deepcopy(current)
    for key, value in changes.items():
        if key in ("status", "updated_at") or key in IMMUTABLE_FIELDS:
            continue
        merged[key] = copy.deepcopy(value)
    merged["updated_at"] = _bump(current, now)
    return merged


def apply_transition(spec: CollectionSpec, current: dict, transition, changes: dict | None = None,
                     *, now: datetime | None = None) -> dict:
    """Status change approved by the workflow engine, plus the fields it stamps."""
    if transition.kind != spec.kind:
        raise ValidationError(f"{transition.kind} transition cannot be applied to {spec.name}")
    if current.get("status") != transition.from_status:
        raise IllegalTransitionError(
            spec.kind, transition.event, current.get("status"),
            f"status changed to {current.get('status')} since the event was validated",
        )
    merged = copy.deepcopy(current)
    for key, value in {**transition.changes, **(changes or {})}.items():
        if key in ("status", "updated_at") or key in IMMUTABLE_FIELDS:
            continue
        merged[key] = copy.deepcopy(value)
    merged["status"] = transition.to_status
    merged["updated_at"] = _bump(current, now)
    return merged


def check_references(spec: CollectionSpec, entity: dict, exists) -> None:
    """Raise NotFoundError unless every reference resolves.

    *exists* is ``callable(collection, entity_id) -> bool`` supplied by the
    backend doing the write.
    """
    for ref_field, target in spec.references.items():
        ref_id = entity.get(ref_field)
        if ref_id and not exists(target, ref_id):
            raise NotFoundError(resource=COLLECTIONS[target].label, resource_id=ref_id)


def find_duplicate(spec: CollectionSpec, entity: dict, entities) -> None:
    """Raise DuplicateKeyError if *entity* clashes with one of *entities*."""
    for other in entities:
        if other.get("id") == entity["id"]:
            raise DuplicateKeyError(spec.name, "id", entity["id"])
        if spec.natural_key and other.get(spec.natural_key) == entity.get(spec.natural_key):
            raise DuplicateKeyError(spec.name, spec.natural_key, entity.get(spec.natural_key))
