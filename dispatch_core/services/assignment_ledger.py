"""
Assignment ledger: the authoritative order -> agent records and their status machine.

At most one record per order is active (Assigned/InProgress); terminal records stay as
history. The ledger never touches agents or the pool; the engine composes those.
"""

import logging
import uuid
from typing import Optional

from dispatch_core.errors import ConflictError, NotFoundError
from dispatch_core.models import (
    Assignment,
    AssignmentFilter,
    AssignmentPage,
    AssignmentStatus,
    Priority,
    StatusChange,
    utcnow,
)
from dispatch_core.services.transitions import validate_transition
from dispatch_core.store import DispatchStore, Transaction, load_many

logger = logging.getLogger(__name__)

REASSIGNED_REASON = "reassigned"


def get_active(tx: Transaction, order_id: str) -> Optional[Assignment]:
    return tx.get_active(order_id)


def history(store: DispatchStore, order_id: str) -> list[Assignment]:
    """Every record for the order, oldest first."""
    return load_many(store.get_assignment, store.assignment_ids_for_order(order_id))


def current(store: DispatchStore, order_id: str) -> Optional[Assignment]:
    """The active record, else the most recent terminal one."""
    active_id = store.active_assignment_id(order_id)
    if active_id:
        return store.get_assignment(active_id)
    records = history(store, order_id)
    return records[-1] if records else None


def create_assignment(
    tx: Transaction,
    order_id: str,
    agent_id: str,
    priority: Priority = Priority.NORMAL,
    notes: str = "",
    actor: str = "system",
    reassigned_from: Optional[str] = None,
    reassignment_count: int = 0,
) -> Assignment:
    """Stage a new Assigned record. ConflictError if the order already has an active one."""
    existing = get_active(tx, order_id)
    if existing is not None:
        raise ConflictError(f"Order '{order_id}' is already assigned to agent '{existing.agent_id}'")
    now = utcnow()
    assignment = Assignment(
        assignment_id=uuid.uuid4().hex,
        order_id=order_id,
        agent_id=agent_id,
        status=AssignmentStatus.ASSIGNED,
        priority=priority,
        notes=notes,
        assigned_at=now,
        updated_at=now,
        status_history=[
            StatusChange(
                status=AssignmentStatus.ASSIGNED,
                timestamp=now,
                actor=actor,
                reason=REASSIGNED_REASON if reassigned_from else None,
            )
        ],
        reassigned_from=reassigned_from,
        reassignment_count=reassignment_count,
    )
    tx.put_assignment(assignment, new=True)
    return assignment


def _require_active(tx: Transaction, order_id: str) -> Assignment:
    active = get_active(tx, order_id)
    if active is None:
        raise NotFoundError(f"No active assignment for order '{order_id}'")
    return active


def update_status(
    tx: Transaction,
    order_id: str,
    new_status: Optional[AssignmentStatus] = None,
    priority: Optional[Priority] = None,
    notes: Optional[str] = None,
    actor: str = "system",
    reason: Optional[str] = None,
) -> tuple[Assignment, Assignment]:
    """
    Apply a status change (validated against the state machine) plus optional
    priority/notes to the active record. A status equal to the current one only
    applies priority/notes. Returns (before, after).
    """
    before = _require_active(tx, order_id)
    now = utcnow()
    update: dict = {"updated_at": now}
    if priority is not None:
        update["priority"] = priority
    if notes is not None:
        update["notes"] = notes
    if new_status is not None and new_status != before.status:
        validate_transition(before.status, new_status)
        update["status"] = new_status
        update["status_history"] = [
            *before.status_history,
            StatusChange(status=new_status, timestamp=now, actor=actor, reason=reason),
        ]
        if new_status == AssignmentStatus.IN_PROGRESS:
            update["started_at"] = now
        if new_status.is_terminal:
            update["completed_at"] = now
    after = before.model_copy(update=update)
    tx.put_assignment(after)
    return before, after


def reassign(
    tx: Transaction,
    order_id: str,
    new_agent_id: str,
    actor: str = "system",
) -> tuple[Assignment, Assignment]:
    """
    Cancel the active record (reason "reassigned") and stage a fresh Assigned record
    for new_agent_id carrying over priority and notes. ConflictError if nothing is active.
    """
    active = get_active(tx, order_id)
    if active is None:
        raise ConflictError(f"Order '{order_id}' has no active assignment to reassign")
    old, cancelled = update_status(
        tx, order_id, AssignmentStatus.CANCELLED, actor=actor, reason=REASSIGNED_REASON
    )
    new = create_assignment(
        tx,
        order_id,
        new_agent_id,
        priority=old.priority,
        notes=old.notes,
        actor=actor,
        reassigned_from=old.agent_id,
        reassignment_count=old.reassignment_count + 1,
    )
    return cancelled, new


def delete(tx: Transaction, order_id: str, actor: str = "system") -> Assignment:
    """Unassign: cancel the active record. Returning the order to the pool is the engine's half."""
    _, cancelled = update_status(tx, order_id, AssignmentStatus.CANCELLED, actor=actor, reason="unassigned")
    return cancelled


def list_assignments(store: DispatchStore, filters: AssignmentFilter) -> AssignmentPage:
    """Filter by status/agent/priority/assigned_at range; newest first; offset/limit paging."""
    records = store.all_assignments()
    if filters.status is not None:
        records = [a for a in records if a.status == filters.status]
    if filters.agent_id:
        records = [a for a in records if a.agent_id == filters.agent_id]
    if filters.priority is not None:
        records = [a for a in records if a.priority == filters.priority]
    if filters.assigned_from is not None:
        records = [a for a in records if a.assigned_at >= filters.assigned_from]
    if filters.assigned_to is not None:
        records = [a for a in records if a.assigned_at <= filters.assigned_to]
    records.sort(key=lambda a: (a.assigned_at, a.assignment_id), reverse=True)
    page = records[filters.offset:filters.offset + filters.limit]
    return AssignmentPage(items=page, total=len(records), offset=filters.offset, limit=filters.limit)
