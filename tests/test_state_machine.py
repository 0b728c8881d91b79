"""
Unit tests for the assignment status machine and lenient status parsing.
Run: pytest tests/test_state_machine.py -v
"""

import pytest

from dispatch_core.errors import InvalidTransitionError
from dispatch_core.models import AssignmentStatus, DeliveryStatus, Priority
from dispatch_core.services.transitions import (
    DELIVERY_STATUS_FOR,
    TRANSITIONS,
    can_transition,
    validate_transition,
)

S = AssignmentStatus


class TestTransitions:
    @pytest.mark.parametrize(
        "current,new",
        [
            (S.ASSIGNED, S.IN_PROGRESS),
            (S.ASSIGNED, S.CANCELLED),
            (S.ASSIGNED, S.FAILED),
            (S.IN_PROGRESS, S.COMPLETED),
            (S.IN_PROGRESS, S.FAILED),
            (S.IN_PROGRESS, S.CANCELLED),
        ],
    )
    def test_legal_edges(self, current, new):
        assert can_transition(current, new)
        validate_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            (S.ASSIGNED, S.COMPLETED),
            (S.IN_PROGRESS, S.ASSIGNED),
            (S.COMPLETED, S.ASSIGNED),
            (S.FAILED, S.IN_PROGRESS),
            (S.CANCELLED, S.ASSIGNED),
        ],
    )
    def test_illegal_edges_raise(self, current, new):
        with pytest.raises(InvalidTransitionError):
            validate_transition(current, new)

    def test_terminal_states_have_no_exits(self):
        for status in (S.COMPLETED, S.FAILED, S.CANCELLED):
            assert status.is_terminal
            assert TRANSITIONS[status] == frozenset()

    def test_active_states_are_not_terminal(self):
        assert not S.ASSIGNED.is_terminal
        assert not S.IN_PROGRESS.is_terminal

    def test_error_message_names_allowed_targets(self):
        with pytest.raises(InvalidTransitionError) as exc:
            validate_transition(S.COMPLETED, S.ASSIGNED)
        assert "terminal" in exc.value.detail

    def test_failed_and_cancelled_return_order_to_pool(self):
        assert DELIVERY_STATUS_FOR[S.FAILED] == DeliveryStatus.UNASSIGNED
        assert DELIVERY_STATUS_FOR[S.CANCELLED] == DeliveryStatus.UNASSIGNED
        assert DELIVERY_STATUS_FOR[S.COMPLETED] == DeliveryStatus.DELIVERED


class TestLenientEnums:
    def test_spaced_legacy_value(self):
        assert AssignmentStatus("In Progress") is S.IN_PROGRESS

    def test_snake_case_value(self):
        assert AssignmentStatus("in_progress") is S.IN_PROGRESS
        assert Priority("urgent") is Priority.URGENT

    def test_unknown_value_rejected(self):
        with pytest.raises(ValueError):
            AssignmentStatus("Teleported")
