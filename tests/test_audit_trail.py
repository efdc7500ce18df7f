"""
Audit trail tests.

Covers:
    - AuditLog model basics (write_audit, to_dict)
    - record() is fire-and-forget: failures are logged, never raised
    - entity history oldest-first, search newest-first with filters
    - workflow commands leave one entry per accepted command
"""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from depot.models import db
from depot.models.audit import AuditLog, write_audit
from depot.services.audit_trail import AuditTrail


@pytest.fixture()
def audit():
    return AuditTrail()


def _log_at(ts, **kw):
    log = write_audit(
        entity_type=kw.get("entity_type", "WASHING_ORDER"),
        entity_id=kw.get("entity_id", "WSH-001"),
        action=kw.get("action", "APPROVE"),
        actor=kw.get("actor", "supervisor"),
    )
    log.timestamp = ts
    db.session.commit()
    return log


class TestAuditLogModel:

    def test_write_audit_serialises_details(self):
        log = write_audit(entity_type="EOR", entity_id="E1", action="SEND", actor="planner",
                          details={"recipient": "liner@example.com"}, old_value="DRAFT", new_value="SENT")
        db.session.commit()
        d = log.to_dict()
        assert d["details"] == {"recipient": "liner@example.com"}
        assert d["old_value"] == "DRAFT"
        assert d["new_value"] == "SENT"
        assert d["timestamp"].endswith("+00:00")

    def test_broken_details_json_reads_as_empty(self):
        log = write_audit(entity_type="EOR", entity_id="E1", action="SEND")
        log.details_json = "{not json"
        assert log.details == {}


class TestRecord:

    def test_record_returns_entry(self, audit):
        entry = audit.record("CONTAINER", "CTR-1", "CREATE", "gate.clerk", new_value="STACKING")
        assert entry["actor"] == "gate.clerk"
        assert AuditLog.query.count() == 1

    def test_missing_actor_defaults_to_system(self, audit):
        entry = audit.record("CONTAINER", "CTR-1", "CREATE", None)
        assert entry["actor"] == "system"

    def test_failure_is_swallowed(self, audit, monkeypatch, caplog):
        def boom(**kwargs):
            raise RuntimeError("audit table locked")

        monkeypatch.setattr("depot.services.audit_trail.write_audit", boom)
        with caplog.at_level(logging.ERROR, logger="depot.services.audit_trail"):
            assert audit.record("CONTAINER", "CTR-1", "CREATE", "gate.clerk") is None
        assert "Audit record failed" in caplog.text
        assert AuditLog.query.count() == 0


class TestQueries:

    def test_entity_history_oldest_first(self, audit):
        t0 = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        _log_at(t0 + timedelta(minutes=2), action="START")
        _log_at(t0, action="APPROVE")
        _log_at(t0 + timedelta(minutes=1), action="ASSIGN")
        _log_at(t0, entity_id="WSH-002")

        history = audit.for_entity("WASHING_ORDER", "WSH-001")
        assert [h["action"] for h in history] == ["APPROVE", "ASSIGN", "START"]

    def test_search_newest_first_with_limit(self, audit):
        t0 = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        for i in range(5):
            _log_at(t0 + timedelta(minutes=i), action=f"STEP_{i}")
        rows = audit.search(limit=2)
        assert [r["action"] for r in rows] == ["STEP_4", "STEP_3"]

    def test_search_filters(self, audit):
        t0 = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        _log_at(t0, action="QC_FAIL", actor="qc.lead")
        _log_at(t0 + timedelta(hours=1), action="QC_PASS", actor="qc.lead")
        _log_at(t0 + timedelta(hours=2), action="APPROVE", actor="supervisor")
        _log_at(t0, entity_type="EOR", entity_id="E1", action="SEND", actor="planner")

        assert len(audit.search(actor="qc.lead")) == 2
        assert [r["action"] for r in audit.search(action="QC_")] == ["QC_PASS", "QC_FAIL"]
        assert [r["entity_id"] for r in audit.search(entity_type="EOR")] == ["E1"]
        window = audit.search(start=t0 + timedelta(minutes=30), end=(t0 + timedelta(hours=1)).isoformat())
        assert [r["action"] for r in window] == ["QC_PASS"]

    def test_bad_date_filter_raises_value_error(self, audit):
        with pytest.raises(ValueError):
            audit.search(start="yesterday")


class TestWorkflowAudit:

    def test_commands_are_recorded(self, workflow, container, audit):
        wo = workflow.create_washing_order({"container_id": container["id"], "id": "WSH-001"}, actor="planner")
        workflow.approve_washing(wo["id"], actor="supervisor")

        history = audit.for_entity("WASHING_ORDER", "WSH-001")
        assert [(h["action"], h["actor"]) for h in history] == [("CREATE", "planner"), ("APPROVE", "supervisor")]
        assert history[-1]["old_value"] == "PENDING_APPROVAL"
        assert history[-1]["new_value"] == "PENDING_SCHEDULE"

        container_history = audit.for_entity("CONTAINER", container["id"])
        assert [h["action"] for h in container_history] == ["CREATE", "STATUS_CHANGE"]

    def test_container_field_update_is_recorded(self, workflow, container, audit):
        survey = workflow.create_survey({"container_id": container["id"], "survey_type": "INBOUND"})
        workflow.fire("surveys", survey["id"], "start")
        workflow.fire("surveys", survey["id"], "complete", {
            "initial_condition": "DAMAGED",
            "damage_items": [{"code": "DT", "location": "door", "repair": "straighten"}],
        })
        eor = workflow.create_eor({"survey_id": survey["id"], "items": [{"line_total": 500}]}, actor="estimator")

        updates = [h for h in audit.for_entity("CONTAINER", container["id"]) if h["action"] == "UPDATE"]
        assert len(updates) == 1
        assert updates[0]["actor"] == "estimator"
        assert updates[0]["details"] == {"fields": ["last_eor_id"]}
        assert workflow.get("containers", container["id"])["last_eor_id"] == eor["id"]

    def test_chat_messages_and_reads_are_recorded(self, chat, audit):
        c = chat.get_or_create_chat(guest={"email": "guest@example.com"})
        msg = chat.send_message(c["id"], "Is MSKU1234567 ready?", "guest")
        chat.mark_as_read(c["id"], actor="agent-7")

        history = audit.for_entity("CHAT", c["id"])
        assert [(h["action"], h["actor"]) for h in history] == [
            ("CREATE", "guest@example.com"), ("MESSAGE", "guest"), ("READ", "agent-7"),
        ]
        assert history[1]["details"] == {"message_id": msg["id"]}

    def test_command_succeeds_when_audit_fails(self, workflow, container, monkeypatch):
        wo = workflow.create_washing_order({"container_id": container["id"]}, actor="planner")

        def boom(**kwargs):
            raise RuntimeError("audit table locked")

        monkeypatch.setattr("depot.services.audit_trail.write_audit", boom)
        approved = workflow.approve_washing(wo["id"], actor="supervisor")
        assert approved["status"] == "PENDING_SCHEDULE"
        assert workflow.get("washing_orders", wo["id"])["status"] == "PENDING_SCHEDULE"
