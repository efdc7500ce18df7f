"""
Workflow command service.

Every command follows the same path:
    re-fetch the entity → WorkflowEngine validates → SyncReconciler persists
    and propagates → AuditTrail records → container side effects.

Container side effects are applied only when the container's own machine
allows them, so a container parked in an unrelated status is left alone
(and the skip is logged) instead of failing the primary command.

Usage:
    svc = WorkflowService(reconciler, audit, settings)
    wo = svc.create_washing_order({"container_id": cid, "program": "STD"}, actor="planner")
    svc.fire("washing_orders", wo["id"], "approve", actor="supervisor")
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from depot.core.exceptions import NotFoundError, ValidationError
from depot.services.code_generator import (
    generate_certificate_number,
    generate_container_id,
    generate_transaction_id,
)
from depot.services.collections import get_collection
from depot.workflow import engine
from depot.workflow.statuses import (
    INITIAL_STATUS,
    ContainerStatus,
    EORStatus,
    RepairOrderStatus,
    SurveyStatus,
)

logger = logging.getLogger(__name__)

# Fields a generic PATCH may touch, per collection
EDITABLE_FIELDS = {
    "containers": {"liner", "size", "type", "yard_location", "booking", "remarks"},
    "washing_orders": {"program", "bay", "team", "scheduled_at", "notes", "safety_notes", "cost"},
    "surveys": {"survey_type", "initial_condition", "damage_items", "images", "remarks"},
    "eors": {"items", "notes", "currency"},
    "repair_orders": {"team", "work_items", "notes"},
    "shunting_requests": {"to_block", "priority", "driver", "notes"},
    "pre_inspections": {"inspector", "scheduled_at", "remarks"},
    "stacking_requests": {"block", "row", "tier", "notes"},
}

# (collection, event) → container event
CONTAINER_EFFECTS = {
    ("washing_orders", "start"): "start_wash",
    ("washing_orders", "qc_pass"): "finish_wash",
    ("washing_orders", "reject"): "cancel_wash",
    ("eors", "approve"): "approve_repair",
    ("eors", "auto_approve"): "approve_repair",
    ("repair_orders", "start"): "start_repair",
    ("pre_inspections", "pass"): "inspection_pass",
    ("pre_inspections", "fail"): "inspection_fail",
    ("stacking_requests", "complete"): "release",
}

REGISTRATION_STATUSES = {ContainerStatus.STACKING.value, ContainerStatus.DM.value}
DEFAULT_YARD_LOCATION = {"block": "A", "row": "01", "tier": "1"}


def _eor_total(items) -> float:
    total = 0.0
    for item in items or []:
        try:
            total += float(item.get("line_total") or 0)
        except (TypeError, ValueError, AttributeError):
            raise ValidationError("EOR line_total must be a number", details={"items": "invalid"}) from None
    return round(total, 2)


class WorkflowService:

    def __init__(self, reconciler, audit, settings):
        self.reconciler = reconciler
        self.audit = audit
        self.settings = settings

    # ── Reads ────────────────────────────────────────────────────────────

    def list(self, collection: str, **filters) -> list[dict]:
        entities = self.reconciler.snapshot(collection)
        if filters:
            entities = [e for e in entities if all(e.get(k) == v for k, v in filters.items())]
        return entities

    def get(self, collection: str, entity_id: str) -> dict:
        entity = self.reconciler.get(collection, entity_id) or self.reconciler.refresh(collection, entity_id)
        if entity is None:
            raise NotFoundError(resource=get_collection(collection).label, resource_id=entity_id)
        return entity

    def _latest(self, collection: str, entity_id: str) -> dict:
        entity = self.reconciler.refresh(collection, entity_id)
        if entity is None:
            raise NotFoundError(resource=get_collection(collection).label, resource_id=entity_id)
        return entity

    def search_containers(self, query: str) -> list[dict]:
        q = (query or "").strip().lower()
        if not q:
            return []
        hits = []
        for c in self.reconciler.snapshot("containers"):
            loc = c.get("yard_location") or {}
            haystack = [
                c.get("container_number") or "",
                c.get("booking") or "",
                f"{loc.get('block', '')}{loc.get('row', '')}",
            ]
            if any(q in h.lower() for h in haystack):
                hits.append(c)
        return hits

    def allowed_events(self, collection: str, entity_id: str) -> list[str]:
        entity = self.get(collection, entity_id)
        return engine.allowed_events(get_collection(collection).kind, entity["status"])

    # ── Creation ─────────────────────────────────────────────────────────

    def register_container(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        now = now or datetime.now(UTC)
        number = (data.get("container_number") or "").strip().upper()
        if not number:
            raise ValidationError("Container number is required", details={"container_number": "required"})
        status = data.get("status") or ContainerStatus.STACKING.value
        if status not in REGISTRATION_STATUSES:
            raise ValidationError(
                f"Containers are registered as STACKING or DM, not {status}",
                details={"status": status},
            )
        existing = [c["id"] for c in self.reconciler.snapshot("containers")]
        entity = {
            "sequence": 1,
            "yard_location": dict(DEFAULT_YARD_LOCATION),
            "gate_in_date": now.isoformat(),
            **data,
            "id": data.get("id") or generate_container_id(existing, now),
            "container_number": number,
            "status": status,
            "created_by": actor,
        }
        result = self.reconciler.create("containers", entity, now=now)
        self.audit.record("CONTAINER", result.entity_id, "CREATE", actor,
                          details={"container_number": number}, new_value=status)
        return self._out(result)

    def _new_child(self, collection: str, data: dict, actor: str, *, prefix=None,
                   now: datetime | None = None, container: dict | None = None) -> dict:
        """Create a container-owned entity in its initial status."""
        spec = get_collection(collection)
        now = now or datetime.now(UTC)
        if container is None:
            container_id = data.get("container_id")
            if not container_id:
                raise ValidationError(f"{spec.label} container_id is required", details={"container_id": "required"})
            container = self._latest("containers", container_id)

        existing = [e["id"] for e in self.reconciler.snapshot(collection)]
        entity = {
            **data,
            "id": data.get("id") or generate_transaction_id(
                container.get("container_number"), now, prefix=prefix, existing_ids=existing),
            "container_id": container["id"],
            "container_number": container.get("container_number"),
            "status": INITIAL_STATUS[spec.kind].value,
            "created_by": actor,
        }
        result = self.reconciler.create(collection, entity, now=now)
        self.audit.record(spec.entity_type, result.entity_id, "CREATE", actor,
                          details={"container_number": container.get("container_number")},
                          new_value=entity["status"])
        return self._out(result)

    def create_washing_order(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        payload = {
            "rework_attempt": 0,
            "rework_count": 0,
            "rework_history": [],
            **data,
        }
        wo = self._new_child("washing_orders", payload, actor, prefix="WO", now=now)
        self._advance_container(wo["container_id"], "request_wash", actor, now=now)
        return wo

    def create_survey(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        payload = {"damage_items": [], "images": [], **data}
        return self._new_child("surveys", payload, actor, now=now)

    def create_eor(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        survey_id = data.get("survey_id")
        if not survey_id:
            raise ValidationError("EOR survey_id is required", details={"survey_id": "required"})
        survey = self._latest("surveys", survey_id)
        container = self._latest("containers", data.get("container_id") or survey["container_id"])

        items = data.get("items") or []
        payload = {**data, "items": items, "total_cost": _eor_total(items), "survey_id": survey["id"]}
        eor = self._new_child("eors", payload, actor, now=now, container=container)

        threshold = self.settings.get_auto_approval_threshold()
        if eor["total_cost"] <= threshold:
            eor = self.fire("eors", eor["id"], "auto_approve", {"threshold": threshold}, actor="system", at=now)
        else:
            self._advance_container(container["id"], None, actor, changes={"last_eor_id": eor["id"]}, now=now)
        return eor

    def create_repair_order(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        eor_id = data.get("eor_id")
        if not eor_id:
            raise ValidationError("Repair order eor_id is required", details={"eor_id": "required"})
        eor = self._latest("eors", eor_id)
        if eor["status"] != EORStatus.APPROVED.value:
            raise ValidationError(
                f"EOR {eor_id} must be APPROVED before a repair order is created (status={eor['status']})",
                details={"eor_id": eor["status"]},
            )
        container = self._latest("containers", eor["container_id"])
        if not self.list("shunting_requests", container_id=container["id"]):
            raise ValidationError(
                f"Container {container.get('container_number')} must have a shunting request "
                "before a repair order is created",
                details={"container_id": "shunting request required"},
            )
        active = [
            ro for ro in self.list("repair_orders", container_id=container["id"])
            if ro["status"] != RepairOrderStatus.DONE.value
        ]
        if active:
            raise ValidationError(
                f"Container {container.get('container_number')} already has an active repair order ({active[0]['id']})",
                details={"container_id": "active repair order exists"},
            )
        payload = {"work_items": [], **data, "eor_id": eor["id"], "survey_id": eor.get("survey_id")}
        return self._new_child("repair_orders", payload, actor, now=now, container=container)

    def create_shunting_request(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        if not data.get("to_block"):
            raise ValidationError("Destination block is required", details={"to_block": "required"})
        if not data.get("container_id"):
            raise ValidationError("Shunting request container_id is required", details={"container_id": "required"})
        container = self._latest("containers", data["container_id"])
        payload = {
            "from_block": (container.get("yard_location") or {}).get("block"),
            "priority": "NORMAL",
            **data,
        }
        return self._new_child("shunting_requests", payload, actor, prefix="SHT", now=now, container=container)

    def schedule_pre_inspection(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        ro_id = data.get("repair_order_id")
        if not ro_id:
            raise ValidationError("Pre-inspection repair_order_id is required", details={"repair_order_id": "required"})
        ro = self._latest("repair_orders", ro_id)
        if ro["status"] != RepairOrderStatus.DONE.value:
            raise ValidationError(
                f"Repair order {ro_id} must be DONE before pre-inspection (status={ro['status']})",
                details={"repair_order_id": ro["status"]},
            )
        container = self._latest("containers", ro["container_id"])
        payload = {**data, "repair_order_id": ro["id"]}
        return self._new_child("pre_inspections", payload, actor, prefix="PI", now=now, container=container)

    def create_stacking_request(self, data: dict, actor: str = "system", *, now: datetime | None = None) -> dict:
        missing = [k for k in ("block", "row", "tier") if not data.get(k)]
        if missing:
            raise ValidationError(
                f"Stacking position requires {', '.join(missing)}",
                details={k: "required" for k in missing},
            )
        return self._new_child("stacking_requests", data, actor, prefix="STK", now=now)

    # ── Updates ──────────────────────────────────────────────────────────

    def update_fields(self, collection: str, entity_id: str, changes: dict, actor: str = "system",
                      *, now: datetime | None = None) -> dict:
        """Whitelisted field update (never status)."""
        spec = get_collection(collection)
        if not isinstance(changes, dict) or not changes:
            raise ValidationError("No changes given")
        if "status" in changes:
            raise ValidationError(
                f"{spec.label} status can only change through a workflow event",
                details={"status": "use a workflow event"},
            )
        allowed = EDITABLE_FIELDS.get(collection, set())
        rejected = sorted(set(changes) - allowed)
        if rejected:
            raise ValidationError(
                f"{spec.label} fields not editable: {', '.join(rejected)}",
                details={k: "not editable" for k in rejected},
            )

        current = self._latest(collection, entity_id)
        changes = dict(changes)
        if collection == "eors":
            if current["status"] != EORStatus.DRAFT.value:
                raise ValidationError(
                    f"EOR {entity_id} can only be edited while DRAFT (status={current['status']})",
                    details={"status": current["status"]},
                )
            if "items" in changes:
                changes["total_cost"] = _eor_total(changes["items"])
        if collection == "surveys" and current["status"] == SurveyStatus.COMPLETED.value:
            raise ValidationError(f"Survey {entity_id} is completed and can no longer be edited")

        changes["updated_by"] = actor
        result = self.reconciler.apply_local_mutation(collection, entity_id, changes, now=now)
        self.audit.record(spec.entity_type, entity_id, "UPDATE", actor,
                          details={"fields": sorted(k for k in changes if k != "updated_by")})
        return self._out(result)

    # ── Transitions ──────────────────────────────────────────────────────

    def fire(self, collection: str, entity_id: str, event: str, payload: dict | None = None,
             actor: str = "system", *, at: datetime | None = None) -> dict:
        """Validate *event* against the entity's latest status and apply it."""
        spec = get_collection(collection)
        at = at or datetime.now(UTC)
        current = self._latest(collection, entity_id)
        payload = dict(payload or {})

        if collection == "washing_orders" and event == "qc_pass" and not payload.get("certificate"):
            issued = [w.get("certificate_number") for w in self.reconciler.snapshot("washing_orders")]
            payload["certificate"] = generate_certificate_number(issued, at)
        if collection == "eors" and event == "auto_approve":
            payload.setdefault("threshold", self.settings.get_auto_approval_threshold())

        t = engine.transition(spec.kind, current["status"], event, payload, entity=current, at=at)
        result = self.reconciler.apply_local_mutation(
            collection, entity_id, {"updated_by": actor}, transition=t, now=at,
        )
        self.audit.record(spec.entity_type, entity_id, event.upper(), actor,
                          details=payload, old_value=t.from_status, new_value=t.to_status)
        entity = self._out(result)
        self._after_transition(collection, entity, t, actor, at)
        return entity

    def _after_transition(self, collection: str, entity: dict, t, actor: str, at: datetime) -> None:
        container_id = entity.get("container_id")
        if not container_id:
            return
        if collection == "surveys" and t.event == "complete":
            container_event = "mark_damaged" if entity.get("initial_condition") == "DAMAGED" else "mark_sound"
            self._advance_container(container_id, container_event, actor,
                                    changes={"last_survey_id": entity["id"]}, now=at)
        elif collection == "eors" and t.to_status == EORStatus.APPROVED.value:
            self._advance_container(container_id, "approve_repair", actor,
                                    changes={"last_eor_id": entity["id"]}, now=at)
        elif collection == "stacking_requests" and t.event == "complete":
            location = {k: entity.get(k) for k in ("block", "row", "tier")}
            self._advance_container(container_id, "release", actor,
                                    changes={"yard_location": location}, now=at)
        elif (collection, t.event) in CONTAINER_EFFECTS:
            self._advance_container(container_id, CONTAINER_EFFECTS[(collection, t.event)], actor, now=at)

    def _advance_container(self, container_id: str, event: str | None, actor: str,
                           *, changes: dict | None = None, now: datetime | None = None) -> dict | None:
        """Fire *event* on the container if legal; always apply *changes*."""
        container = self.reconciler.refresh("containers", container_id)
        if container is None:
            logger.warning("Container %s vanished before side effect %s", container_id, event)
            return None
        changes = dict(changes or {}, updated_by=actor)

        if event and event in engine.allowed_events("container", container["status"]):
            t = engine.transition("container", container["status"], event, entity=container, at=now)
            result = self.reconciler.apply_local_mutation("containers", container_id, changes, transition=t, now=now)
            self.audit.record("CONTAINER", container_id, "STATUS_CHANGE", actor,
                              details={"event": event, "container_number": container.get("container_number")},
                              old_value=t.from_status, new_value=t.to_status)
            return self._out(result)

        if event:
            logger.info("Container %s in %s: side effect '%s' skipped", container_id, container["status"], event)
        if len(changes) > 1:
            result = self.reconciler.apply_local_mutation("containers", container_id, changes, now=now)
            details = {"fields": sorted(k for k in changes if k != "updated_by")}
            if event:
                details["skipped_event"] = event
            self.audit.record("CONTAINER", container_id, "UPDATE", actor, details=details)
            return self._out(result)
        return None

    # ── Named washing commands ───────────────────────────────────────────

    def approve_washing(self, wo_id, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "approve", actor=actor, **kw)

    def reject_washing(self, wo_id, reason, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "reject", {"reason": reason}, actor=actor, **kw)

    def assign_bay(self, wo_id, bay, team, scheduled_at, actor="system", **kw):
        payload = {"bay": bay, "team": team, "scheduled_at": scheduled_at}
        return self.fire("washing_orders", wo_id, "assign", payload, actor=actor, **kw)

    def start_washing(self, wo_id, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "start", actor=actor, **kw)

    def complete_washing(self, wo_id, checklist, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "complete", {"checklist": checklist}, actor=actor, **kw)

    def qc_pass(self, wo_id, certificate=None, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "qc_pass", {"certificate": certificate}, actor=actor, **kw)

    def qc_fail(self, wo_id, reasons, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "qc_fail", {"reasons": reasons}, actor=actor, **kw)

    def restart_washing(self, wo_id, actor="system", **kw):
        return self.fire("washing_orders", wo_id, "restart", actor=actor, **kw)

    # ── Maintenance ──────────────────────────────────────────────────────

    def sync_approved_eors(self, actor: str = "system") -> int:
        """Move containers of approved EORs still sitting in DM to AR."""
        moved = 0
        for eor in self.list("eors", status=EORStatus.APPROVED.value):
            if self._advance_container(eor["container_id"], "approve_repair", actor) is not None:
                moved += 1
        return moved

    # ── Stats ────────────────────────────────────────────────────────────

    def container_stats(self) -> dict:
        containers = self.reconciler.snapshot("containers")
        by_status: dict[str, int] = {}
        for c in containers:
            by_status[c["status"]] = by_status.get(c["status"], 0) + 1
        return {"total": len(containers), "by_status": by_status}

    def eor_stats(self) -> dict:
        eors = self.reconciler.snapshot("eors")
        count = lambda *statuses: sum(1 for e in eors if e["status"] in statuses)  # noqa: E731
        return {
            "total": len(eors),
            "draft": count("DRAFT"),
            "pending": count("SENT", "PENDING"),
            "approved": count("APPROVED"),
            "rejected": count("REJECTED"),
            "total_value": round(sum(float(e.get("total_cost") or 0) for e in eors), 2),
        }

    @staticmethod
    def _out(result) -> dict:
        entity = dict(result.entity or {})
        if result.degraded:
            entity["_sync"] = {"degraded": True, "error": result.error}
        return entity
