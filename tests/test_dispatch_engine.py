"""
Tests for the dispatch engine: assignment lifecycle, load bookkeeping, reassignment,
unassignment, bulk updates and reporting.
Run: pytest tests/test_dispatch_engine.py -v
"""

from datetime import timedelta

import pytest

from dispatch_core import activity
from dispatch_core.errors import (
    CapacityExceededError,
    ConflictError,
    InvalidTransitionError,
    InvariantViolation,
    NotFoundError,
    PreconditionFailedError,
)
from dispatch_core.models import (
    AgentStatus,
    AgentUpdate,
    AssignmentFilter,
    AssignmentPatch,
    AssignmentSearch,
    AssignmentStatus,
    DeliveryStatus,
    Priority,
    utcnow,
)
from dispatch_core.services import agent_registry
from dispatch_core.services.dispatch_engine import DispatchEngine


def unassigned_ids(engine):
    return [o.order_id for o in engine.list_unassigned()]


def load(engine, agent_id):
    return engine.get_agent(agent_id).current_load


class TestScenarios:
    def test_assign_bumps_load_and_leaves_pool(self, engine, dispatch_floor):
        assignment = engine.assign("CBC0001", "DA01")
        assert assignment.status == AssignmentStatus.ASSIGNED
        assert assignment.agent_id == "DA01"
        assert load(engine, "DA01") == 1
        assert "CBC0001" not in unassigned_ids(engine)
        assert engine.get_order("CBC0001").delivery_status == DeliveryStatus.ASSIGNED

    def test_second_assign_of_same_order_conflicts(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        with pytest.raises(ConflictError):
            engine.assign("CBC0001", "DA02")
        assert load(engine, "DA02") == 0
        assert engine.get_assignment("CBC0001").agent_id == "DA01"

    def test_progress_then_complete_releases_load(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        started = engine.update_assignment("CBC0001", status=AssignmentStatus.IN_PROGRESS)
        assert started.started_at is not None
        assert engine.get_order("CBC0001").delivery_status == DeliveryStatus.IN_TRANSIT
        done = engine.update_assignment("CBC0001", status=AssignmentStatus.COMPLETED)
        assert done.completed_at is not None
        assert load(engine, "DA01") == 0
        assert engine.get_agent("DA01").completed_deliveries == 1
        assert engine.get_order("CBC0001").delivery_status == DeliveryStatus.DELIVERED
        assert "CBC0001" not in unassigned_ids(engine)
        assert [h.status for h in done.status_history] == [
            AssignmentStatus.ASSIGNED,
            AssignmentStatus.IN_PROGRESS,
            AssignmentStatus.COMPLETED,
        ]

    def test_reassign_moves_load(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.assign("CBC0002", "DA01")
        new = engine.reassign("CBC0002", "DA03")
        assert load(engine, "DA01") == 1
        assert load(engine, "DA03") == 1
        assert new.agent_id == "DA03"
        assert new.reassigned_from == "DA01"
        assert new.reassignment_count == 1
        history = engine.assignment_history("CBC0002")
        assert [a.status for a in history] == [AssignmentStatus.CANCELLED, AssignmentStatus.ASSIGNED]
        assert [a for a in history if a.is_active] == [new]
        assert history[0].status_history[-1].reason == "reassigned"

    def test_delete_loaded_agent_conflicts(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        before = engine.get_agent("DA01")
        with pytest.raises(ConflictError):
            engine.delete_agent("DA01")
        assert engine.get_agent("DA01") == before

    def test_bulk_cancel_reports_per_item(self, engine, dispatch_floor):
        engine.assign("CBC0004", "DA02")
        result = engine.bulk_update(["CBC0003", "CBC0004"], AssignmentPatch(status=AssignmentStatus.CANCELLED))
        by_id = {r.order_id: r for r in result.results}
        assert result.succeeded == 1 and result.failed == 1
        assert not by_id["CBC0003"].ok
        assert by_id["CBC0003"].error.code == "not_found"
        assert by_id["CBC0004"].ok
        assert by_id["CBC0004"].assignment.status == AssignmentStatus.CANCELLED
        assert "CBC0004" in unassigned_ids(engine)
        assert load(engine, "DA02") == 0


class TestRoundTrip:
    def test_assign_then_complete_restores_load(self, engine, dispatch_floor):
        before = load(engine, "DA02")
        engine.assign("CBC0003", "DA02")
        engine.update_assignment("CBC0003", status=AssignmentStatus.IN_PROGRESS)
        engine.update_assignment("CBC0003", status=AssignmentStatus.COMPLETED)
        assert load(engine, "DA02") == before
        assert "CBC0003" not in unassigned_ids(engine)

    def test_assign_then_unassign_restores_pool(self, engine, dispatch_floor):
        engine.assign("CBC0003", "DA02")
        cancelled = engine.unassign("CBC0003")
        assert cancelled.status == AssignmentStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert load(engine, "DA02") == 0
        assert unassigned_ids(engine) == ["CBC0001", "CBC0002", "CBC0003", "CBC0004"]
        assert engine.audit_loads() == []


class TestAssignPreconditions:
    def test_unknown_order_and_agent(self, engine, dispatch_floor):
        with pytest.raises(NotFoundError):
            engine.assign("NOPE", "DA01")
        with pytest.raises(NotFoundError):
            engine.assign("CBC0001", "DA99")
        assert unassigned_ids(engine)[0] == "CBC0001"

    def test_inactive_agent_precondition_failed(self, engine, dispatch_floor):
        engine.update_agent("DA02", AgentUpdate(status=AgentStatus.INACTIVE))
        with pytest.raises(PreconditionFailedError):
            engine.assign("CBC0001", "DA02")

    def test_capacity_exceeded(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.assign("CBC0002", "DA01")
        with pytest.raises(CapacityExceededError):
            engine.assign("CBC0003", "DA01")
        assert load(engine, "DA01") == 2
        assert "CBC0003" in unassigned_ids(engine)

    def test_delivered_order_not_eligible(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.update_assignment("CBC0001", status=AssignmentStatus.IN_PROGRESS)
        engine.update_assignment("CBC0001", status=AssignmentStatus.COMPLETED)
        with pytest.raises(ConflictError):
            engine.assign("CBC0001", "DA02")

    def test_priority_and_notes_recorded(self, engine, dispatch_floor):
        a = engine.assign("CBC0001", "DA02", priority=Priority.URGENT, notes="fragile", actor="ops")
        assert a.priority == Priority.URGENT
        assert a.notes == "fragile"
        assert a.status_history[0].actor == "ops"

    def test_auto_busy_flips_and_blocks(self, store, dispatch_floor):
        eng = DispatchEngine(store, auto_busy=True)
        eng.assign("CBC0001", "DA01")
        eng.assign("CBC0002", "DA01")
        assert eng.get_agent("DA01").status == AgentStatus.BUSY
        with pytest.raises(PreconditionFailedError):
            eng.assign("CBC0003", "DA01")
        eng.unassign("CBC0002")
        assert eng.get_agent("DA01").status == AgentStatus.ACTIVE


class TestAtomicity:
    def test_failure_mid_unit_writes_nothing(self, engine, dispatch_floor, monkeypatch):
        def boom(*args, **kwargs):
            raise InvariantViolation("simulated")

        monkeypatch.setattr(agent_registry, "adjust_load", boom)
        with pytest.raises(InvariantViolation):
            engine.assign("CBC0001", "DA01")
        assert engine.assignment_history("CBC0001") == []
        assert engine.get_order("CBC0001").delivery_status == DeliveryStatus.UNASSIGNED
        assert load(engine, "DA01") == 0

    def test_failed_reassign_keeps_original(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA02")
        engine.update_agent("DA03", AgentUpdate(status=AgentStatus.INACTIVE))
        with pytest.raises(PreconditionFailedError):
            engine.reassign("CBC0001", "DA03")
        assert engine.get_assignment("CBC0001").agent_id == "DA02"
        assert load(engine, "DA02") == 1
        assert len(engine.assignment_history("CBC0001")) == 1

    def test_rejected_unit_emits_no_event(self, engine, dispatch_floor):
        activity.clear()
        with pytest.raises(CapacityExceededError):
            engine.assign("CBC0001", "DA01")
            engine.assign("CBC0002", "DA01")
            engine.assign("CBC0003", "DA01")
        types = [e["type"] for e in activity.get_recent(limit=10)]
        assert types.count("assignment_created") == 2


class TestUpdateAndUnassign:
    def test_illegal_edge_rejected(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        with pytest.raises(InvalidTransitionError):
            engine.update_assignment("CBC0001", status=AssignmentStatus.COMPLETED)
        assert engine.get_assignment("CBC0001").status == AssignmentStatus.ASSIGNED
        assert load(engine, "DA01") == 1

    def test_priority_only_update_keeps_status(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        updated = engine.update_assignment("CBC0001", priority=Priority.HIGH, notes="call first")
        assert updated.status == AssignmentStatus.ASSIGNED
        assert updated.priority == Priority.HIGH
        assert len(updated.status_history) == 1

    def test_failed_returns_order_to_pool(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        failed = engine.update_assignment("CBC0001", status=AssignmentStatus.FAILED, reason="no answer")
        assert failed.status_history[-1].reason == "no answer"
        assert load(engine, "DA01") == 0
        assert "CBC0001" in unassigned_ids(engine)
        assert engine.get_assignment("CBC0001").status == AssignmentStatus.FAILED

    def test_update_with_new_agent_reassigns(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        updated = engine.update_assignment("CBC0001", new_agent_id="DA02", status=AssignmentStatus.IN_PROGRESS)
        assert updated.agent_id == "DA02"
        assert updated.status == AssignmentStatus.IN_PROGRESS
        assert load(engine, "DA01") == 0
        assert load(engine, "DA02") == 1
        assert engine.get_order("CBC0001").delivery_status == DeliveryStatus.IN_TRANSIT

    def test_update_without_active_assignment(self, engine, dispatch_floor):
        with pytest.raises(NotFoundError):
            engine.update_assignment("CBC0001", status=AssignmentStatus.IN_PROGRESS)
        with pytest.raises(NotFoundError):
            engine.update_assignment("NOPE", status=AssignmentStatus.IN_PROGRESS)

    def test_unassign_twice_is_not_found(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.unassign("CBC0001")
        with pytest.raises(NotFoundError):
            engine.unassign("CBC0001")
        assert load(engine, "DA01") == 0

    def test_reassign_without_active_conflicts(self, engine, dispatch_floor):
        with pytest.raises(ConflictError):
            engine.reassign("CBC0001", "DA02")

    def test_reassign_to_same_agent_is_noop(self, engine, dispatch_floor):
        original = engine.assign("CBC0001", "DA01")
        again = engine.reassign("CBC0001", "DA01")
        assert again.assignment_id == original.assignment_id
        assert load(engine, "DA01") == 1

    def test_reassign_to_full_agent(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.assign("CBC0002", "DA01")
        engine.assign("CBC0003", "DA02")
        with pytest.raises(CapacityExceededError):
            engine.reassign("CBC0003", "DA01")

    def test_agent_assignments(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA02")
        engine.assign("CBC0002", "DA02")
        engine.unassign("CBC0001")
        assert [a.order_id for a in engine.agent_assignments("DA02")] == ["CBC0002"]
        with pytest.raises(NotFoundError):
            engine.agent_assignments("DA99")


class TestListing:
    def test_filters_and_paging(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01", priority=Priority.HIGH)
        engine.assign("CBC0002", "DA02")
        engine.assign("CBC0003", "DA02")
        page = engine.list_assignments(AssignmentFilter(agent_id="DA02"))
        assert page.total == 2
        assert [a.order_id for a in page.items] == ["CBC0003", "CBC0002"]
        assert engine.list_assignments(AssignmentFilter(priority=Priority.HIGH)).items[0].order_id == "CBC0001"
        second = engine.list_assignments(AssignmentFilter(offset=1, limit=1))
        assert second.total == 3 and len(second.items) == 1
        future = engine.list_assignments(AssignmentFilter(assigned_from=utcnow() + timedelta(hours=1)))
        assert future.total == 0

    def test_history_of_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            engine.assignment_history("NOPE")

    def test_history_of_never_assigned_order(self, engine, dispatch_floor):
        assert engine.assignment_history("CBC0001") == []
        with pytest.raises(NotFoundError):
            engine.get_assignment("CBC0001")


class TestReporting:
    def test_statistics(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.update_assignment("CBC0001", status=AssignmentStatus.IN_PROGRESS)
        engine.update_assignment("CBC0001", status=AssignmentStatus.COMPLETED)
        engine.assign("CBC0002", "DA02")
        stats = engine.statistics()
        assert stats.total_assignments == 2
        assert stats.active_assignments == 1
        assert stats.by_status["Completed"] == 1
        assert stats.by_status["Assigned"] == 1
        assert stats.completion_rate == 50.0
        assert stats.unassigned_orders == 2
        assert stats.average_delivery_minutes is not None
        assert stats.average_delivery_minutes >= 0

    def test_statistics_empty(self, engine):
        stats = engine.statistics()
        assert stats.total_assignments == 0
        assert stats.completion_rate == 0.0
        assert stats.average_delivery_minutes is None

    def test_statistics_per_agent(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.assign("CBC0002", "DA02")
        assert engine.statistics(agent_id="DA01").total_assignments == 1

    def _mixed_history(self, engine):
        engine.assign("CBC0001", "DA01")
        engine.update_assignment("CBC0001", status=AssignmentStatus.IN_PROGRESS)
        engine.update_assignment("CBC0001", status=AssignmentStatus.COMPLETED)
        engine.assign("CBC0002", "DA01")
        engine.reassign("CBC0002", "DA02")
        engine.assign("CBC0003", "DA01")
        engine.update_assignment("CBC0003", status=AssignmentStatus.FAILED)

    def test_performance_per_agent(self, engine, dispatch_floor):
        self._mixed_history(engine)
        da01, da02 = engine.performance()
        assert (da01.agent_id, da01.agent_name) == ("DA01", "Agent 1")
        assert (da01.total_assignments, da01.completed, da01.failed, da01.cancelled) == (3, 1, 1, 1)
        assert da01.active == 0
        assert da01.completion_rate == 33.33
        assert da01.average_delivery_minutes is not None
        assert da02.total_assignments == 1
        assert da02.active == 1
        assert da02.total_reassignments == 1
        assert da02.completion_rate == 0.0
        assert da02.average_delivery_minutes is None

    def test_performance_filters(self, engine, dispatch_floor):
        self._mixed_history(engine)
        assert [p.agent_id for p in engine.performance(agent_id="DA02")] == ["DA02"]
        assert engine.performance(assigned_from=utcnow() + timedelta(hours=1)) == []

    def test_search_matches_substrings_case_insensitively(self, engine, dispatch_floor):
        self._mixed_history(engine)
        by_customer = engine.search(AssignmentSearch(customer_name="customer cbc0002"))
        assert by_customer.total == 2
        assert [a.agent_id for a in by_customer.items] == ["DA02", "DA01"]
        assert [a.order_id for a in engine.search(AssignmentSearch(agent_name="AGENT 2")).items] == ["CBC0002"]
        assert [a.order_id for a in engine.search(AssignmentSearch(order_id="bc0003")).items] == ["CBC0003"]
        failed = engine.search(AssignmentSearch(agent_name="agent", status=AssignmentStatus.FAILED))
        assert [a.order_id for a in failed.items] == ["CBC0003"]
        assert engine.search(AssignmentSearch(customer_name="nobody")).total == 0

    def test_search_newest_first_and_paged(self, engine, dispatch_floor):
        self._mixed_history(engine)
        page = engine.search(AssignmentSearch(offset=1, limit=2))
        assert page.total == 4
        everything = engine.search(AssignmentSearch()).items
        assert everything[0].order_id == "CBC0003"
        assert page.items == everything[1:3]

    def test_export_rows_join_order_and_agent(self, engine, dispatch_floor):
        self._mixed_history(engine)
        rows = engine.export_rows(status=AssignmentStatus.COMPLETED)
        assert len(rows) == 1
        row = rows[0]
        assert (row.order_id, row.agent_id, row.agent_name) == ("CBC0001", "DA01", "Agent 1")
        assert row.customer_name == "Customer CBC0001"
        assert row.item_count == 1
        assert row.total_amount == 700.0
        assert row.completed_date is not None
        assert row.delivery_time_minutes == 0
        assert len(engine.export_rows()) == 4
        assert [r.order_id for r in engine.export_rows(agent_id="DA02")] == ["CBC0002"]
        assert engine.export_rows(status=AssignmentStatus.ASSIGNED)[0].delivery_time_minutes is None

    def test_attention(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        engine.update_assignment("CBC0001", status=AssignmentStatus.FAILED)
        engine.assign("CBC0002", "DA01")
        engine.reassign("CBC0002", "DA02")
        engine.assign("CBC0003", "DA03")
        items = engine.attention(stale_hours=-1, reassignment_threshold=1)
        reasons = {item.assignment.order_id: item.reasons for item in items}
        assert reasons["CBC0001"] == ["failed"]
        assert reasons["CBC0002"] == ["frequently_reassigned", "stale"]
        assert reasons["CBC0003"] == ["stale"]

    def test_attention_quiet_floor(self, engine, dispatch_floor):
        engine.assign("CBC0001", "DA01")
        assert engine.attention(stale_hours=24, reassignment_threshold=3) == []

    def test_audit_detects_drift(self, engine, dispatch_floor, store):
        engine.assign("CBC0001", "DA01")
        assert engine.audit_loads() == []
        tx = store.begin()
        agent = store.get_agent("DA02")
        tx.put_agent(agent.model_copy(update={"current_load": 1}))
        store.commit(tx)
        drifts = engine.audit_loads()
        assert [(d.agent_id, d.recorded_load, d.actual_load) for d in drifts] == [("DA02", 1, 0)]
