"""
State-machine tests for the pure workflow engine.

Covers:
    - Washing happy path including one rework loop
    - Illegal events (wrong source status, terminal status, unknown event)
    - Checklist gating on complete, mandatory rework reasons on qc_fail
    - Rework counters and history
    - Terminal-state derivation and allowed_events for every machine
    - EOR auto-approval threshold, survey completion rules
"""

from datetime import UTC, datetime

import pytest

from depot.core.exceptions import (
    IllegalTransitionError,
    IncompleteChecklistError,
    MissingReworkReasonError,
    ValidationError,
)
from depot.workflow.engine import MACHINES, allowed_events, terminal_states, transition
from depot.workflow.statuses import STATUS_ENUMS, WashingStatus

AT = datetime(2026, 3, 15, 9, 30, tzinfo=UTC)

CHECKLIST_OK = [
    {"id": "floor", "label": "Floor clean", "required": True, "pass": True},
    {"id": "odour", "label": "No odour", "required": True, "pass": True},
    {"id": "photos", "label": "Photos taken", "required": False, "pass": False},
]


def _apply(entity: dict, t) -> dict:
    """Fold a Transition into an entity dict the way the store does."""
    return {**entity, **t.changes, "status": t.to_status}


# ═════════════════════════════════════════════════════════════════════════════
# Washing machine
# ═════════════════════════════════════════════════════════════════════════════


class TestWashingLifecycle:

    def test_full_cycle_with_one_rework(self):
        wo = {"id": "WSH-001", "status": "PENDING_APPROVAL", "rework_attempt": 0, "rework_count": 0}

        wo = _apply(wo, transition("washing_order", wo["status"], "approve", at=AT))
        assert wo["status"] == "PENDING_SCHEDULE"

        wo = _apply(wo, transition(
            "washing_order", wo["status"], "assign",
            {"bay": "BAY-2", "team": "Team A", "scheduled_at": "2026-03-15T10:00:00+00:00"}, at=AT,
        ))
        assert wo["status"] == "SCHEDULED"
        assert wo["bay"] == "BAY-2"

        wo = _apply(wo, transition("washing_order", wo["status"], "start", at=AT))
        assert wo["status"] == "IN_PROGRESS"
        assert wo["started_at"] == AT.isoformat()

        wo = _apply(wo, transition("washing_order", wo["status"], "complete",
                                   {"checklist": CHECKLIST_OK}, entity=wo, at=AT))
        assert wo["status"] == "PENDING_QC"

        wo = _apply(wo, transition("washing_order", wo["status"], "qc_fail",
                                   {"reasons": ["residue"]}, entity=wo, at=AT))
        assert wo["status"] == "REWORK"
        assert wo["rework_attempt"] == 1
        assert wo["rework_count"] == 1
        assert wo["qc_result"] == "FAIL"
        assert wo["rework_reasons"] == ["residue"]

        wo = _apply(wo, transition("washing_order", wo["status"], "restart", entity=wo, at=AT))
        assert wo["status"] == "IN_PROGRESS"
        assert wo["rework_attempt"] == 1
        assert wo["rework_history"] == [{"attempt": 1, "reasons": ["residue"], "failed_at": AT.isoformat()}]

        wo = _apply(wo, transition("washing_order", wo["status"], "complete",
                                   {"checklist": CHECKLIST_OK}, entity=wo, at=AT))
        wo = _apply(wo, transition("washing_order", wo["status"], "qc_pass",
                                   {"certificate": "CLN-2026-000001"}, entity=wo, at=AT))
        assert wo["status"] == "CERTIFIED"
        assert wo["certificate_number"] == "CLN-2026-000001"
        assert wo["qc_result"] == "PASS"

    def test_reject_requires_reason(self):
        with pytest.raises(ValidationError, match="Rejection reason is required"):
            transition("washing_order", "PENDING_APPROVAL", "reject", {"reason": "   "})

    def test_reject_stamps_reason(self):
        t = transition("washing_order", "PENDING_APPROVAL", "reject", {"reason": "Reefer unit"}, at=AT)
        assert t.to_status == "REJECTED"
        assert t.changes["rejection_reason"] == "Reefer unit"

    def test_assign_requires_bay_team_and_time(self):
        with pytest.raises(ValidationError) as exc:
            transition("washing_order", "PENDING_SCHEDULE", "assign", {"bay": "BAY-1"})
        assert set(exc.value.details) == {"team", "scheduled_at"}

    def test_qc_pass_requires_certificate(self):
        with pytest.raises(ValidationError):
            transition("washing_order", "PENDING_QC", "qc_pass", {})

    def test_accepts_enum_status(self):
        t = transition("washing_order", WashingStatus.SCHEDULED, "start", at=AT)
        assert t.from_status == "SCHEDULED"
        assert t.to_status == "IN_PROGRESS"


class TestIllegalTransitions:

    def test_certified_is_terminal(self):
        with pytest.raises(IllegalTransitionError) as exc:
            transition("washing_order", "CERTIFIED", "approve")
        assert "terminal" in str(exc.value)
        assert exc.value.current_status == "CERTIFIED"
        assert exc.value.event == "approve"

    def test_rejected_is_terminal(self):
        with pytest.raises(IllegalTransitionError):
            transition("washing_order", "REJECTED", "approve")

    def test_wrong_source_status_names_allowed_sources(self):
        with pytest.raises(IllegalTransitionError) as exc:
            transition("washing_order", "PENDING_APPROVAL", "qc_pass", {"certificate": "CLN-2026-000001"})
        assert "PENDING_QC" in str(exc.value)

    def test_unknown_event(self):
        with pytest.raises(IllegalTransitionError, match="unknown event"):
            transition("washing_order", "PENDING_APPROVAL", "teleport")

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            transition("washing_order", "BOGUS", "approve")

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            transition("spaceship", "PENDING", "launch")

    @pytest.mark.parametrize("status", ["STACKING", "DM", "AR", "RELEASED"])
    def test_container_cannot_finish_wash_unless_washing(self, status):
        with pytest.raises(IllegalTransitionError):
            transition("container", status, "finish_wash")


class TestChecklistGating:

    def test_failed_required_item_blocks_completion(self):
        checklist = [
            {"id": "floor", "required": True, "pass": False},
            {"id": "walls", "required": True, "pass": True},
        ]
        with pytest.raises(IncompleteChecklistError) as exc:
            transition("washing_order", "IN_PROGRESS", "complete", {"checklist": checklist})
        assert exc.value.failing_items == ["floor"]
        assert "all required checklist items must pass" in str(exc.value)

    def test_unset_required_item_blocks_completion(self):
        checklist = [{"id": "floor", "required": True}]
        with pytest.raises(IncompleteChecklistError):
            transition("washing_order", "IN_PROGRESS", "complete", {"checklist": checklist})

    def test_optional_items_may_fail(self):
        checklist = [{"id": "photos", "required": False, "pass": False}]
        t = transition("washing_order", "IN_PROGRESS", "complete", {"checklist": checklist})
        assert t.to_status == "PENDING_QC"
        assert t.changes["checklist_results"] == checklist

    def test_malformed_checklist(self):
        with pytest.raises(ValidationError):
            transition("washing_order", "IN_PROGRESS", "complete", {"checklist": "all good"})


class TestRework:

    def test_qc_fail_without_reasons(self):
        with pytest.raises(MissingReworkReasonError):
            transition("washing_order", "PENDING_QC", "qc_fail", {"reasons": []})

    def test_blank_reasons_do_not_count(self):
        with pytest.raises(MissingReworkReasonError):
            transition("washing_order", "PENDING_QC", "qc_fail", {"reasons": ["", "  "]})

    def test_single_reason_string_is_accepted(self):
        t = transition("washing_order", "PENDING_QC", "qc_fail", {"reasons": "residue"})
        assert t.changes["rework_reasons"] == ["residue"]

    def test_restart_appends_history(self):
        wo = {
            "status": "REWORK",
            "rework_attempt": 2,
            "rework_reasons": ["odour"],
            "qc_failed_at": "2026-03-15T11:00:00+00:00",
            "rework_history": [{"attempt": 1, "reasons": ["residue"], "failed_at": "2026-03-15T09:00:00+00:00"}],
        }
        t = transition("washing_order", "REWORK", "restart", entity=wo, at=AT)
        assert t.changes["rework_attempt"] == 2
        assert t.changes["rework_reasons"] == []
        assert t.changes["rework_history"][-1] == {
            "attempt": 2, "reasons": ["odour"], "failed_at": "2026-03-15T11:00:00+00:00",
        }
        # the entity passed in is not mutated
        assert len(wo["rework_history"]) == 1

    def test_attempt_rises_with_each_rework_cycle(self):
        wo = {"status": "PENDING_QC", "rework_attempt": 0}
        for reason in ("residue", "odour"):
            wo = _apply(wo, transition("washing_order", "PENDING_QC", "qc_fail",
                                       {"reasons": [reason]}, entity=wo, at=AT))
            wo = _apply(wo, transition("washing_order", "REWORK", "restart", entity=wo, at=AT))
            wo["status"] = "PENDING_QC"
        assert wo["rework_attempt"] == 2
        assert [(h["attempt"], h["reasons"]) for h in wo["rework_history"]] == [(1, ["residue"]), (2, ["odour"])]


# ═════════════════════════════════════════════════════════════════════════════
# Machine structure
# ═════════════════════════════════════════════════════════════════════════════


class TestMachineStructure:

    def test_washing_terminal_states(self):
        assert terminal_states("washing_order") == {"CERTIFIED", "REJECTED"}

    def test_rework_is_not_terminal(self):
        assert "REWORK" not in terminal_states("washing_order")
        assert allowed_events("washing_order", "REWORK") == ["restart"]

    def test_container_only_released_is_terminal(self):
        assert terminal_states("container") == {"RELEASED"}

    def test_eor_terminal_states(self):
        assert terminal_states("eor") == {"APPROVED", "REJECTED"}

    def test_allowed_events_from_pending_qc(self):
        assert allowed_events("washing_order", "PENDING_QC") == ["qc_fail", "qc_pass"]

    def test_allowed_events_empty_for_terminal(self):
        assert allowed_events("chat", "closed") == []

    @pytest.mark.parametrize("kind", sorted(MACHINES))
    def test_every_rule_uses_known_statuses(self, kind):
        known = {s.value for s in STATUS_ENUMS[kind]}
        for event, rule in MACHINES[kind].items():
            assert set(rule["from"]) <= known, event
            assert rule["to"] in known, event


class TestOtherMachines:

    def test_eor_auto_approve_within_threshold(self):
        t = transition("eor", "DRAFT", "auto_approve", {"threshold": 100}, entity={"total_cost": 100})
        assert t.to_status == "APPROVED"
        assert t.changes["auto_approved"] is True

    def test_eor_auto_approve_above_threshold(self):
        with pytest.raises(IllegalTransitionError, match="exceeds auto-approval threshold"):
            transition("eor", "DRAFT", "auto_approve", {"threshold": 100}, entity={"total_cost": 100.01})

    def test_eor_reject_requires_reason(self):
        with pytest.raises(ValidationError):
            transition("eor", "PENDING", "reject", {})

    def test_damaged_survey_needs_damage_items(self):
        entity = {"survey_type": "INBOUND", "initial_condition": "DAMAGED", "damage_items": []}
        with pytest.raises(ValidationError, match="damage item"):
            transition("survey", "IN_PROGRESS", "complete", entity=entity)

    def test_sound_survey_completes(self):
        entity = {"survey_type": "INBOUND"}
        t = transition("survey", "IN_PROGRESS", "complete", {"initial_condition": "SOUND"}, entity=entity, at=AT)
        assert t.to_status == "COMPLETED"
        assert t.changes["initial_condition"] == "SOUND"

    def test_shunting_dispatch_requires_driver(self):
        with pytest.raises(ValidationError):
            transition("shunting_request", "PENDING", "dispatch", {})

    def test_pre_inspection_fail_requires_reasons(self):
        with pytest.raises(MissingReworkReasonError):
            transition("pre_inspection", "SCHEDULED", "fail", {})

    def test_container_release_stamps_time(self):
        t = transition("container", "AV", "release", at=AT)
        assert t.to_status == "RELEASED"
        assert t.changes == {"released_at": AT.isoformat()}
