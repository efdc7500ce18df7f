"""
Workflow Engine — status state machines for every depot entity kind.

Pure layer: no I/O, no side effects.  Given an entity kind, its current
status and an event (plus the event payload and the entity itself for guards
that need context), ``transition()`` either returns a ``Transition`` describing
the next status and the fields the event stamps, or raises a
``TransitionError`` / ``ValidationError`` naming the rule that failed.

Transition tables follow the ``{event: {"from": [...], "to": ...}}`` shape.
A status with no outgoing event is terminal.

Washing machine:
    PENDING_APPROVAL --approve-->          PENDING_SCHEDULE
    PENDING_APPROVAL --reject(reason)-->   REJECTED          (terminal)
    PENDING_SCHEDULE --assign(bay, team, scheduled_at)--> SCHEDULED
    SCHEDULED        --start-->            IN_PROGRESS
    IN_PROGRESS      --complete(checklist)--> PENDING_QC     (required items must pass)
    PENDING_QC       --qc_pass(certificate)--> CERTIFIED     (terminal)
    PENDING_QC       --qc_fail(reasons)-->  REWORK           (rework_attempt += 1)
    REWORK           --restart-->           IN_PROGRESS      (attempt moved to rework_history)

Usage:
    from depot.workflow.engine import transition

    t = transition("washing_order", "PENDING_QC", "qc_fail", {"reasons": ["residue"]})
    t.to_status   # "REWORK"
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from depot.core.exceptions import (
    IllegalTransitionError,
    IncompleteChecklistError,
    MissingReworkReasonError,
    ValidationError,
)
from depot.workflow.statuses import (
    STATUS_ENUMS,
    ChatStatus,
    ContainerStatus,
    EORStatus,
    PreInspectionStatus,
    RepairOrderStatus,
    ShuntingStatus,
    StackingStatus,
    SurveyStatus,
    WashingStatus,
)


def _rule(sources, target):
    return {"from": [s.value for s in sources], "to": target.value}


# ── Transition tables ────────────────────────────────────────────────────────

W = WashingStatus
WASHING_TRANSITIONS = {
    "approve":  _rule([W.PENDING_APPROVAL], W.PENDING_SCHEDULE),
    "reject":   _rule([W.PENDING_APPROVAL], W.REJECTED),
    "assign":   _rule([W.PENDING_SCHEDULE], W.SCHEDULED),
    "start":    _rule([W.SCHEDULED], W.IN_PROGRESS),
    "complete": _rule([W.IN_PROGRESS], W.PENDING_QC),
    "qc_pass":  _rule([W.PENDING_QC], W.CERTIFIED),
    "qc_fail":  _rule([W.PENDING_QC], W.REWORK),
    "restart":  _rule([W.REWORK], W.IN_PROGRESS),
}

C = ContainerStatus
CONTAINER_TRANSITIONS = {
    "request_wash":    _rule([C.STACKING, C.AV], C.PENDING_WASH),
    "cancel_wash":     _rule([C.PENDING_WASH], C.STACKING),
    "start_wash":      _rule([C.PENDING_WASH], C.WASHING),
    "finish_wash":     _rule([C.WASHING], C.AV),
    "mark_damaged":    _rule([C.STACKING, C.AV], C.DM),
    "mark_sound":      _rule([C.STACKING], C.AV),
    "approve_repair":  _rule([C.DM], C.AR),
    "start_repair":    _rule([C.AR], C.REPAIR),
    "inspection_pass": _rule([C.REPAIR], C.AV),
    "inspection_fail": _rule([C.REPAIR], C.REPAIR),
    "release":         _rule([C.AV], C.RELEASED),
}

SURVEY_TRANSITIONS = {
    "start":    _rule([SurveyStatus.DRAFT], SurveyStatus.IN_PROGRESS),
    "complete": _rule([SurveyStatus.IN_PROGRESS], SurveyStatus.COMPLETED),
}

EOR_TRANSITIONS = {
    "send":         _rule([EORStatus.DRAFT], EORStatus.SENT),
    "acknowledge":  _rule([EORStatus.SENT], EORStatus.PENDING),
    "approve":      _rule([EORStatus.PENDING], EORStatus.APPROVED),
    "reject":       _rule([EORStatus.PENDING], EORStatus.REJECTED),
    "auto_approve": _rule([EORStatus.DRAFT], EORStatus.APPROVED),
}

REPAIR_ORDER_TRANSITIONS = {
    "start":    _rule([RepairOrderStatus.NEW], RepairOrderStatus.IN_PROGRESS),
    "complete": _rule([RepairOrderStatus.IN_PROGRESS], RepairOrderStatus.DONE),
}

SHUNTING_TRANSITIONS = {
    "dispatch": _rule([ShuntingStatus.PENDING], ShuntingStatus.DISPATCHED),
    "complete": _rule([ShuntingStatus.DISPATCHED], ShuntingStatus.COMPLETED),
}

PRE_INSPECTION_TRANSITIONS = {
    "pass": _rule([PreInspectionStatus.SCHEDULED], PreInspectionStatus.PASS),
    "fail": _rule([PreInspectionStatus.SCHEDULED], PreInspectionStatus.FAIL),
}

STACKING_TRANSITIONS = {
    "complete": _rule([StackingStatus.PENDING], StackingStatus.COMPLETED),
}

CHAT_TRANSITIONS = {
    "close": _rule([ChatStatus.ACTIVE], ChatStatus.CLOSED),
}

MACHINES: dict[str, dict] = {
    "container": CONTAINER_TRANSITIONS,
    "washing_order": WASHING_TRANSITIONS,
    "survey": SURVEY_TRANSITIONS,
    "eor": EOR_TRANSITIONS,
    "repair_order": REPAIR_ORDER_TRANSITIONS,
    "shunting_request": SHUNTING_TRANSITIONS,
    "pre_inspection": PRE_INSPECTION_TRANSITIONS,
    "stacking_request": STACKING_TRANSITIONS,
    "chat": CHAT_TRANSITIONS,
}


def terminal_states(kind: str) -> set[str]:
    """Statuses of *kind* that accept no further events."""
    machine = _machine(kind)
    sources = {s for rule in machine.values() for s in rule["from"]}
    return {s.value for s in STATUS_ENUMS[kind]} - sources


def allowed_events(kind: str, status) -> list[str]:
    """Events that are legal from *status* (empty for terminal states)."""
    current = _status_value(status)
    return sorted(ev for ev, rule in _machine(kind).items() if current in rule["from"])


@dataclass(frozen=True)
class Transition:
    """An accepted event: where the entity goes and what it stamps."""

    kind: str
    event: str
    from_status: str
    to_status: str
    changes: dict = field(default_factory=dict)


def transition(
    kind: str,
    current_status,
    event: str,
    payload: dict | None = None,
    *,
    entity: dict | None = None,
    at: datetime | None = None,
) -> Transition:
    """
    Validate *event* against *current_status* and return the next state.

    Args:
        kind: Entity kind ("washing_order", "container", ...).
        current_status: Latest known status of the entity.
        event: Event name ("approve", "qc_fail", ...).
        payload: Event arguments (reason, checklist, reasons, ...).
        entity: Current entity, for guards that need its fields
                (rework counter, survey condition, EOR total).
        at: Acceptance time stamped into the changes; read from the
            clock once when omitted.

    Raises:
        IllegalTransitionError, IncompleteChecklistError,
        MissingReworkReasonError, ValidationError
    """
    machine = _machine(kind)
    current = _status_value(current_status)
    if current not in {s.value for s in STATUS_ENUMS[kind]}:
        raise ValidationError(f"Unknown {kind} status: {current!r}", details={"status": current})

    rule = machine.get(event)
    if rule is None:
        raise IllegalTransitionError(kind, event, current, f"unknown event '{event}'")
    if current not in rule["from"]:
        if current in terminal_states(kind):
            reason = f"status {current} is terminal"
        else:
            reason = f"'{event}' is only allowed from {', '.join(rule['from'])}"
        raise IllegalTransitionError(kind, event, current, reason)

    payload = payload or {}
    entity = entity or {}
    at = at or datetime.now(UTC)

    guard = _GUARDS.get((kind, event))
    changes = guard(kind, event, current, payload, entity, at) if guard else {}
    return Transition(kind=kind, event=event, from_status=current, to_status=rule["to"], changes=changes)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _machine(kind: str) -> dict:
    machine = MACHINES.get(kind)
    if machine is None:
        raise ValidationError(f"Unknown entity kind: {kind!r}", details={"kind": kind})
    return machine


def _status_value(status):
    return status.value if hasattr(status, "value") else status


def _ts(at: datetime) -> str:
    return at.isoformat()


def _required_text(payload: dict, key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", details={key: "required"})
    return value.strip()


def _reasons(kind, event, current, payload) -> list[str]:
    raw = payload.get("reasons")
    if isinstance(raw, str):
        raw = [raw]
    reasons = [r.strip() for r in (raw or []) if isinstance(r, str) and r.strip()]
    if not reasons:
        raise MissingReworkReasonError(kind, event, current)
    return reasons


# ── Guards: (kind, event, current, payload, entity, at) -> changes ───────────


def _washing_approve(kind, event, current, payload, entity, at):
    return {"approved_at": _ts(at)}


def _washing_reject(kind, event, current, payload, entity, at):
    reason = _required_text(payload, "reason", "Rejection reason")
    return {"rejection_reason": reason, "rejected_at": _ts(at)}


def _washing_assign(kind, event, current, payload, entity, at):
    missing = [k for k in ("bay", "team", "scheduled_at") if not payload.get(k)]
    if missing:
        raise ValidationError(
            f"Bay assignment requires {', '.join(missing)}",
            details={k: "required" for k in missing},
        )
    scheduled_at = payload["scheduled_at"]
    if isinstance(scheduled_at, datetime):
        scheduled_at = scheduled_at.isoformat()
    return {"bay": payload["bay"], "team": payload["team"], "scheduled_at": scheduled_at}


def _started(kind, event, current, payload, entity, at):
    return {"started_at": _ts(at)}


def _washing_complete(kind, event, current, payload, entity, at):
    checklist = payload.get("checklist")
    if checklist is None:
        checklist = []
    if not isinstance(checklist, list) or not all(isinstance(i, dict) for i in checklist):
        raise ValidationError("Checklist must be a list of items", details={"checklist": "invalid"})

    failing = []
    for idx, item in enumerate(checklist):
        if item.get("required") and item.get("pass") is not True:
            failing.append(str(item.get("id") or item.get("label") or idx))
    if failing:
        raise IncompleteChecklistError(kind, event, current, failing)

    return {
        "checklist_results": [dict(i) for i in checklist],
        "completed_at": _ts(at),
    }


def _washing_qc_pass(kind, event, current, payload, entity, at):
    certificate = _required_text(payload, "certificate", "Certificate number")
    return {
        "qc_result": "PASS",
        "certificate_number": certificate,
        "certified_at": _ts(at),
    }


def _washing_qc_fail(kind, event, current, payload, entity, at):
    reasons = _reasons(kind, event, current, payload)
    return {
        "qc_result": "FAIL",
        "rework_reasons": reasons,
        "qc_failed_at": _ts(at),
        "rework_attempt": int(entity.get("rework_attempt") or 0) + 1,
        "rework_count": int(entity.get("rework_count") or 0) + 1,
    }


def _washing_restart(kind, event, current, payload, entity, at):
    # qc_fail already numbered this attempt
    attempt = max(int(entity.get("rework_attempt") or 0), 1)
    history = [dict(h) for h in (entity.get("rework_history") or [])]
    history.append({
        "attempt": attempt,
        "reasons": list(entity.get("rework_reasons") or []),
        "failed_at": entity.get("qc_failed_at"),
    })
    return {
        "rework_attempt": attempt,
        "rework_history": history,
        "rework_reasons": [],
        "restarted_at": _ts(at),
    }


def _survey_complete(kind, event, current, payload, entity, at):
    merged = {**entity, **payload}
    if not merged.get("initial_condition"):
        raise ValidationError("Initial condition is required", details={"initial_condition": "required"})
    if not merged.get("survey_type"):
        raise ValidationError("Survey type is required", details={"survey_type": "required"})
    if merged["initial_condition"] == "DAMAGED" and not merged.get("damage_items"):
        raise ValidationError(
            'At least one damage item is required when condition is "DAMAGED"',
            details={"damage_items": "required"},
        )
    changes = {"completed_at": _ts(at)}
    for key in ("initial_condition", "survey_type", "damage_items"):
        if key in payload:
            changes[key] = payload[key]
    return changes


def _eor_send(kind, event, current, payload, entity, at):
    return {
        "sent_at": _ts(at),
        "sent_to": payload.get("recipient"),
        "sent_method": payload.get("method"),
    }


def _eor_approve(kind, event, current, payload, entity, at):
    return {"approved_at": _ts(at), "approval_notes": payload.get("notes")}


def _eor_reject(kind, event, current, payload, entity, at):
    reason = _required_text(payload, "reason", "Rejection reason")
    return {"rejection_reason": reason, "rejected_at": _ts(at)}


def _eor_auto_approve(kind, event, current, payload, entity, at):
    threshold = payload.get("threshold")
    if threshold is None:
        raise ValidationError("Auto-approval threshold is required", details={"threshold": "required"})
    total = float(entity.get("total_cost") or 0)
    if total > float(threshold):
        raise IllegalTransitionError(
            kind, event, current,
            f"total cost {total:g} exceeds auto-approval threshold {float(threshold):g}",
        )
    return {"approved_at": _ts(at), "auto_approved": True}


def _completed(kind, event, current, payload, entity, at):
    return {"completed_at": _ts(at)}


def _shunting_dispatch(kind, event, current, payload, entity, at):
    driver = _required_text(payload, "driver", "Driver")
    return {"driver": driver, "dispatched_at": _ts(at)}


def _inspection_pass(kind, event, current, payload, entity, at):
    return {"result": "PASS", "inspected_at": _ts(at), "remarks": payload.get("remarks")}


def _inspection_fail(kind, event, current, payload, entity, at):
    reasons = _reasons(kind, event, current, payload)
    return {"result": "FAIL", "inspected_at": _ts(at), "rework_reasons": reasons}


def _container_stamp(field_name):
    def guard(kind, event, current, payload, entity, at):
        return {field_name: _ts(at)}
    return guard


def _chat_close(kind, event, current, payload, entity, at):
    return {"closed_at": _ts(at)}


_GUARDS = {
    ("washing_order", "approve"): _washing_approve,
    ("washing_order", "reject"): _washing_reject,
    ("washing_order", "assign"): _washing_assign,
    ("washing_order", "start"): _started,
    ("washing_order", "complete"): _washing_complete,
    ("washing_order", "qc_pass"): _washing_qc_pass,
    ("washing_order", "qc_fail"): _washing_qc_fail,
    ("washing_order", "restart"): _washing_restart,
    ("survey", "start"): _started,
    ("survey", "complete"): _survey_complete,
    ("eor", "send"): _eor_send,
    ("eor", "approve"): _eor_approve,
    ("eor", "reject"): _eor_reject,
    ("eor", "auto_approve"): _eor_auto_approve,
    ("repair_order", "start"): _started,
    ("repair_order", "complete"): _completed,
    ("shunting_request", "dispatch"): _shunting_dispatch,
    ("shunting_request", "complete"): _completed,
    ("pre_inspection", "pass"): _inspection_pass,
    ("pre_inspection", "fail"): _inspection_fail,
    ("stacking_request", "complete"): _completed,
    ("container", "approve_repair"): _container_stamp("ar_start_time"),
    ("container", "start_repair"): _container_stamp("repair_started_at"),
    ("container", "release"): _container_stamp("released_at"),
    ("chat", "close"): _chat_close,
}
