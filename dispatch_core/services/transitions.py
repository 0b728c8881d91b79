"""Assignment status state machine. Every mutator validates edges through validate_transition."""

from dispatch_core.errors import InvalidTransitionError
from dispatch_core.models import AssignmentStatus, DeliveryStatus

S = AssignmentStatus

TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    S.ASSIGNED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.FAILED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Order delivery status implied by the assignment entering each status.
DELIVERY_STATUS_FOR: dict[AssignmentStatus, DeliveryStatus] = {
    S.ASSIGNED: DeliveryStatus.ASSIGNED,
    S.IN_PROGRESS: DeliveryStatus.IN_TRANSIT,
    S.COMPLETED: DeliveryStatus.DELIVERED,
    S.FAILED: DeliveryStatus.UNASSIGNED,
    S.CANCELLED: DeliveryStatus.UNASSIGNED,
}


def can_transition(current: AssignmentStatus, new: AssignmentStatus) -> bool:
    return new in TRANSITIONS[current]


def validate_transition(current: AssignmentStatus, new: AssignmentStatus) -> None:
    """Raise InvalidTransitionError unless current -> new is an edge of the state machine."""
    if not can_transition(current, new):
        allowed = ", ".join(sorted(s.value for s in TRANSITIONS[current])) or "none (terminal)"
        raise InvalidTransitionError(
            f"Cannot move assignment from {current.value} to {new.value}; allowed: {allowed}"
        )
