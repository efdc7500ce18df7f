"""
EntityStore tests — typed repositories over the local database.

Covers:
    - add / get round trip with envelope + extra fields
    - natural-key and id uniqueness (DuplicateKeyError)
    - generic updates never touch id, created_at or status
    - status changes only through an engine transition
    - fresh copies on every read
    - reference checks on add
    - monotonic updated_at
"""

from datetime import UTC, datetime, timedelta

import pytest

from depot.core.exceptions import (
    DuplicateKeyError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from depot.services.entity_store import EntityStore
from depot.workflow.engine import transition

T0 = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)


@pytest.fixture()
def store():
    return EntityStore()


def _container(store, number="MSKU1234567", **kw):
    return store.collection("containers").add({"container_number": number, "liner": "MSK", **kw}, now=T0)


class TestAdd:

    def test_round_trip(self, store):
        c = _container(store, booking="BK-77", yard_location={"block": "A", "row": "01", "tier": "1"})
        fetched = store.collection("containers").get_by_id(c["id"])
        assert fetched == c
        assert fetched["status"] == "STACKING"
        assert fetched["booking"] == "BK-77"
        assert fetched["created_at"] == T0.isoformat()
        assert fetched["updated_at"] == T0.isoformat()

    def test_duplicate_container_number(self, store):
        _container(store)
        with pytest.raises(DuplicateKeyError) as exc:
            _container(store)
        assert exc.value.field == "container_number"
        assert exc.value.value == "MSKU1234567"

    def test_duplicate_id(self, store):
        _container(store, id="CTR-20260315-0001")
        with pytest.raises(DuplicateKeyError) as exc:
            _container(store, number="TGHU7654321", id="CTR-20260315-0001")
        assert exc.value.field == "id"

    def test_natural_key_required(self, store):
        with pytest.raises(ValidationError):
            store.collection("containers").add({"liner": "MSK"})

    def test_unknown_status_rejected(self, store):
        with pytest.raises(ValidationError):
            _container(store, status="FLOATING")

    def test_reference_must_exist(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.collection("washing_orders").add({"container_id": "CTR-NOPE"})
        assert exc.value.resource == "Container"

    def test_reference_required(self, store):
        with pytest.raises(ValidationError):
            store.collection("washing_orders").add({"program": "STD"})

    def test_lookup_by_natural_key(self, store):
        c = _container(store)
        assert store.collection("containers").get_by_natural_key("MSKU1234567")["id"] == c["id"]
        assert store.collection("containers").get_by_natural_key("NOPE0000000") is None


class TestReads:

    def test_returned_entities_are_copies(self, store):
        c = _container(store, yard_location={"block": "A", "row": "01", "tier": "1"})
        c["yard_location"]["block"] = "Z"
        c["liner"] = "XXX"
        fresh = store.collection("containers").get_by_id(c["id"])
        assert fresh["yard_location"]["block"] == "A"
        assert fresh["liner"] == "MSK"

    def test_find_by_indexed_and_extra_fields(self, store):
        a = _container(store, booking="BK-1")
        _container(store, number="TGHU7654321", liner="ONE", booking="BK-2")
        repo = store.collection("containers")
        assert [c["id"] for c in repo.find_by(liner="MSK")] == [a["id"]]
        assert [c["id"] for c in repo.find_by(booking="BK-1")] == [a["id"]]
        assert repo.count() == 2

    def test_require_missing(self, store):
        with pytest.raises(NotFoundError):
            store.collection("containers").require("CTR-NOPE")


class TestUpdate:

    def test_merges_changes(self, store):
        c = _container(store)
        updated = store.collection("containers").update(c["id"], {"liner": "MAEU", "remarks": "dent"},
                                                        now=T0 + timedelta(minutes=5))
        assert updated["liner"] == "MAEU"
        assert updated["remarks"] == "dent"
        assert updated["container_number"] == "MSKU1234567"
        assert updated["updated_at"] == (T0 + timedelta(minutes=5)).isoformat()

    def test_status_change_rejected(self, store):
        c = _container(store)
        with pytest.raises(ValidationError, match="workflow event"):
            store.collection("containers").update(c["id"], {"status": "AV"})
        assert store.collection("containers").get_by_id(c["id"])["status"] == "STACKING"

    def test_id_change_rejected(self, store):
        c = _container(store)
        with pytest.raises(ValidationError, match="immutable"):
            store.collection("containers").update(c["id"], {"id": "OTHER"})

    def test_created_at_change_rejected(self, store):
        c = _container(store)
        with pytest.raises(ValidationError):
            store.collection("containers").update(c["id"], {"created_at": "2020-01-01T00:00:00+00:00"})

    def test_updated_at_never_goes_back(self, store):
        c = _container(store)
        updated = store.collection("containers").update(c["id"], {"remarks": "x"}, now=T0 - timedelta(hours=1))
        assert updated["updated_at"] == T0.isoformat()

    def test_missing_entity(self, store):
        with pytest.raises(NotFoundError):
            store.collection("containers").update("CTR-NOPE", {"liner": "X"})

    def test_duplicate_natural_key_on_update(self, store):
        c = _container(store)
        _container(store, number="TGHU7654321")
        with pytest.raises(DuplicateKeyError):
            store.collection("containers").update(c["id"], {"container_number": "TGHU7654321"})


class TestStatusChanges:

    def test_set_status_applies_transition(self, store):
        c = _container(store)
        t = transition("container", c["status"], "request_wash", at=T0)
        updated = store.collection("containers").set_status(c["id"], t, {"updated_by": "planner"}, now=T0)
        assert updated["status"] == "PENDING_WASH"
        assert updated["updated_by"] == "planner"

    def test_stale_transition_rejected(self, store):
        c = _container(store)
        repo = store.collection("containers")
        t = transition("container", "STACKING", "request_wash", at=T0)
        repo.set_status(c["id"], t, now=T0)
        with pytest.raises(IllegalTransitionError):
            repo.set_status(c["id"], t, now=T0)

    def test_transition_of_other_kind_rejected(self, store):
        c = _container(store)
        t = transition("washing_order", "PENDING_APPROVAL", "approve", at=T0)
        with pytest.raises(ValidationError):
            store.collection("containers").set_status(c["id"], t)


class TestDeleteAndReplace:

    def test_delete(self, store):
        c = _container(store)
        store.collection("containers").delete(c["id"])
        assert store.exists("containers", c["id"]) is False
        with pytest.raises(NotFoundError):
            store.collection("containers").delete(c["id"])

    def test_replace_all(self, store):
        _container(store)
        rows = store.collection("containers").replace_all([
            {"id": "C1", "status": "AV", "container_number": "AAAU0000001",
             "created_at": T0.isoformat(), "updated_at": T0.isoformat()},
        ])
        assert [r["id"] for r in rows] == ["C1"]
        assert store.collection("containers").count() == 1

    def test_upsert_rejects_invalid_status(self, store):
        with pytest.raises(ValidationError):
            store.collection("containers").upsert({
                "id": "C1", "status": "NOPE", "container_number": "AAAU0000001",
                "created_at": T0.isoformat(), "updated_at": T0.isoformat(),
            })

    def test_unknown_collection(self, store):
        with pytest.raises(ValidationError):
            store.collection("spaceships")
