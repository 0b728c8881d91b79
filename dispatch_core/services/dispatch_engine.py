"""
Dispatch engine: the only component that changes more than one entity at a time.

Each public operation holds the order lock (then agent locks, sorted), stages every write
on one Transaction and commits it in a single step, so an assignment, the agent load it
causes and the order's delivery status are never visible apart. Errors raised before
commit leave the store untouched.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Optional

import numpy as np

from dispatch_core import activity
from dispatch_core.config import (
    ATTENTION_REASSIGNMENT_THRESHOLD,
    ATTENTION_STALE_HOURS,
    DISPATCH_AUTO_BUSY,
)
from dispatch_core.errors import (
    CapacityExceededError,
    ConflictError,
    DispatchError,
    InvariantViolation,
    NotFoundError,
    PreconditionFailedError,
)
from dispatch_core.locks import agent_key, order_key
from dispatch_core.models import (
    Agent,
    AgentCreate,
    AgentStatus,
    AgentUpdate,
    Assignment,
    AssignmentFilter,
    AssignmentPage,
    AssignmentPatch,
    AssignmentSearch,
    AssignmentStatistics,
    AssignmentStatus,
    AgentPerformance,
    AttentionItem,
    BulkItemResult,
    BulkUpdateResult,
    DeliveryStatus,
    ErrorInfo,
    ExportRow,
    LoadDrift,
    Order,
    OrderCreate,
    Priority,
    utcnow,
)
from dispatch_core.services import agent_registry, assignment_ledger, order_pool
from dispatch_core.services.order_pool import UnassignedOrders
from dispatch_core.services.transitions import DELIVERY_STATUS_FOR
from dispatch_core.store import DispatchStore, Transaction, get_store, load_many

logger = logging.getLogger(__name__)


class DispatchEngine:
    def __init__(self, store: DispatchStore, auto_busy: bool = DISPATCH_AUTO_BUSY):
        self.store = store
        self.locks = store.locks
        self.auto_busy = auto_busy

    def _commit(self, tx: Transaction) -> None:
        self.store.commit(tx)
        for event_type, data in tx.events:
            activity.emit(event_type, data)

    # --- Agents ---

    def create_agent(self, data: AgentCreate) -> Agent:
        with self.locks.hold(f"email:{(data.email or '').strip().lower()}"):
            tx = self.store.begin()
            agent = agent_registry.create_agent(tx, data)
            self._commit(tx)
        return agent

    def update_agent(self, agent_id: str, patch: AgentUpdate) -> Agent:
        keys = [agent_key(agent_id)]
        if patch.email:
            keys.append(f"email:{patch.email.strip().lower()}")
        with self.locks.hold(*keys):
            tx = self.store.begin()
            agent = agent_registry.update_agent(tx, agent_id, patch, auto_busy=self.auto_busy)
            self._commit(tx)
        return agent

    def delete_agent(self, agent_id: str) -> Agent:
        with self.locks.hold(agent_key(agent_id)):
            tx = self.store.begin()
            agent = agent_registry.delete_agent(tx, agent_id)
            self._commit(tx)
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        return agent_registry.get_agent(self.store.begin(), agent_id)

    def list_agents(self, status: Optional[AgentStatus] = None, location: Optional[str] = None) -> list[Agent]:
        return agent_registry.list_agents(self.store, status=status, location=location)

    def agent_assignments(self, agent_id: str) -> list[Assignment]:
        """Active assignments held by the agent, oldest first."""
        self.get_agent(agent_id)
        active = load_many(self.store.get_assignment, self.store.active_assignment_ids())
        mine = [a for a in active if a.agent_id == agent_id]
        return sorted(mine, key=lambda a: a.assigned_at)

    def audit_loads(self) -> list[LoadDrift]:
        """Agents whose load counter disagrees with the ledger. Empty when the invariant holds."""
        active = load_many(self.store.get_assignment, self.store.active_assignment_ids())
        actual = Counter(a.agent_id for a in active)
        drifts = [
            LoadDrift(agent_id=agent.agent_id, recorded_load=agent.current_load, actual_load=actual[agent.agent_id])
            for agent in self.store.list_agents()
            if agent.current_load != actual[agent.agent_id]
        ]
        for drift in drifts:
            logger.error(
                "Load drift for agent %s: recorded=%d actual=%d",
                drift.agent_id, drift.recorded_load, drift.actual_load,
            )
        return drifts

    # --- Orders ---

    def enqueue_order(self, data: OrderCreate) -> Order:
        with self.locks.hold(order_key(data.order_id)):
            tx = self.store.begin()
            order = order_pool.enqueue(tx, data)
            self._commit(tx)
        return order

    def get_order(self, order_id: str) -> Order:
        return order_pool.get_order(self.store.begin(), order_id)

    def list_unassigned(self) -> UnassignedOrders:
        return order_pool.list_unassigned(self.store)

    # --- Assignments ---

    @staticmethod
    def _check_assignable(agent: Agent) -> None:
        if agent.status != AgentStatus.ACTIVE:
            raise PreconditionFailedError(
                f"Delivery agent '{agent.agent_id}' is {agent.status.value}, not Active"
            )
        if agent.at_capacity:
            raise CapacityExceededError(
                f"Delivery agent '{agent.agent_id}' is at capacity ({agent.current_load}/{agent.capacity})"
            )

    def assign(
        self,
        order_id: str,
        agent_id: str,
        priority: Priority = Priority.NORMAL,
        notes: str = "",
        actor: str = "admin",
    ) -> Assignment:
        """Create the order's active assignment, bump the agent's load and take the order out of the pool."""
        with self.locks.hold(order_key(order_id), agent_key(agent_id)):
            tx = self.store.begin()
            order = order_pool.get_order(tx, order_id)
            if order.delivery_status != DeliveryStatus.UNASSIGNED:
                active = assignment_ledger.get_active(tx, order_id)
                if active is not None:
                    raise ConflictError(f"Order '{order_id}' is already assigned to agent '{active.agent_id}'")
                raise ConflictError(f"Order '{order_id}' is {order.delivery_status.value}, not eligible for dispatch")
            agent = agent_registry.get_agent(tx, agent_id)
            self._check_assignable(agent)
            assignment = assignment_ledger.create_assignment(
                tx, order_id, agent_id, priority=priority, notes=notes, actor=actor
            )
            agent_registry.adjust_load(tx, agent_id, +1, auto_busy=self.auto_busy)
            order_pool.mark_assigned(tx, order_id)
            tx.emit("assignment_created", {"order_id": order_id, "agent_id": agent_id, "priority": priority.value})
            self._commit(tx)
        logger.info("Order %s assigned to agent %s (priority=%s).", order_id, agent_id, priority.value)
        return assignment

    def _active_or_missing(self, order_id: str, missing_error=NotFoundError) -> Assignment:
        active_id = self.store.active_assignment_id(order_id)
        active = self.store.get_assignment(active_id) if active_id else None
        if active is not None:
            return active
        if self.store.get_order(order_id) is None:
            raise NotFoundError(f"Order '{order_id}' not found")
        raise missing_error(f"No active assignment for order '{order_id}'")

    def _reassign(self, tx: Transaction, order_id: str, new_agent_id: str, actor: str) -> Assignment:
        new_agent = agent_registry.get_agent(tx, new_agent_id)
        self._check_assignable(new_agent)
        cancelled, new = assignment_ledger.reassign(tx, order_id, new_agent_id, actor=actor)
        agent_registry.adjust_load(tx, cancelled.agent_id, -1, auto_busy=self.auto_busy)
        agent_registry.adjust_load(tx, new_agent_id, +1, auto_busy=self.auto_busy)
        order_pool.set_delivery_status(tx, order_id, DeliveryStatus.ASSIGNED)
        tx.emit(
            "assignment_reassigned",
            {"order_id": order_id, "from_agent_id": cancelled.agent_id, "to_agent_id": new_agent_id},
        )
        logger.info("Order %s reassigned from agent %s to %s.", order_id, cancelled.agent_id, new_agent_id)
        return new

    def _on_status_change(self, tx: Transaction, before: Assignment, after: Assignment) -> None:
        """Propagate a committed-to-be status edge to the agent's load and the order's delivery status."""
        status = after.status
        if status.is_terminal:
            agent_registry.adjust_load(tx, after.agent_id, -1, auto_busy=self.auto_busy)
        if status == AssignmentStatus.COMPLETED:
            agent_registry.record_completion(tx, after.agent_id)
        if status in (AssignmentStatus.FAILED, AssignmentStatus.CANCELLED):
            order_pool.mark_unassigned(tx, after.order_id)
        else:
            order_pool.set_delivery_status(tx, after.order_id, DELIVERY_STATUS_FOR[status])
        tx.emit(
            "assignment_status_changed",
            {
                "order_id": after.order_id,
                "agent_id": after.agent_id,
                "from": before.status.value,
                "to": status.value,
            },
        )
        logger.info(
            "Order %s assignment %s -> %s (agent %s).",
            after.order_id, before.status.value, status.value, after.agent_id,
        )

    def update_assignment(
        self,
        order_id: str,
        status: Optional[AssignmentStatus] = None,
        priority: Optional[Priority] = None,
        notes: Optional[str] = None,
        new_agent_id: Optional[str] = None,
        actor: str = "admin",
        reason: Optional[str] = None,
    ) -> Assignment:
        """
        Reassign (when new_agent_id differs), then apply status/priority/notes to the active record.
        Entering a terminal status releases the agent's load; Failed/Cancelled return the order to the pool.
        """
        with self.locks.hold(order_key(order_id)):
            active = self._active_or_missing(order_id)
            agent_ids = {active.agent_id}
            if new_agent_id:
                agent_ids.add(new_agent_id)
            with self.locks.hold(*(agent_key(a) for a in sorted(agent_ids))):
                tx = self.store.begin()
                current = assignment_ledger.get_active(tx, order_id)
                if current is None:
                    raise InvariantViolation(f"Active assignment for order '{order_id}' vanished under lock")
                if new_agent_id and new_agent_id != current.agent_id:
                    current = self._reassign(tx, order_id, new_agent_id, actor)
                if status is not None or priority is not None or notes is not None:
                    before, current = assignment_ledger.update_status(
                        tx, order_id, status, priority=priority, notes=notes, actor=actor, reason=reason
                    )
                    if current.status != before.status:
                        self._on_status_change(tx, before, current)
                self._commit(tx)
        return current

    def reassign(self, order_id: str, new_agent_id: str, actor: str = "admin") -> Assignment:
        """Move the active assignment to another agent. ConflictError when nothing is active."""
        with self.locks.hold(order_key(order_id)):
            active = self._active_or_missing(order_id, missing_error=ConflictError)
            if active.agent_id == new_agent_id:
                return active
            with self.locks.hold(*(agent_key(a) for a in sorted({active.agent_id, new_agent_id}))):
                tx = self.store.begin()
                new = self._reassign(tx, order_id, new_agent_id, actor)
                self._commit(tx)
        return new

    def unassign(self, order_id: str, actor: str = "admin") -> Assignment:
        """Cancel the active assignment and return the order to the pool."""
        with self.locks.hold(order_key(order_id)):
            active = self._active_or_missing(order_id)
            with self.locks.hold(agent_key(active.agent_id)):
                tx = self.store.begin()
                cancelled = assignment_ledger.delete(tx, order_id, actor=actor)
                self._on_status_change(tx, active, cancelled)
                self._commit(tx)
        return cancelled

    def bulk_update(self, order_ids: list[str], patch: AssignmentPatch) -> BulkUpdateResult:
        """Apply the same patch to each order independently; failures are reported per id."""
        results: list[BulkItemResult] = []
        for order_id in order_ids:
            try:
                assignment = self.update_assignment(
                    order_id,
                    status=patch.status,
                    priority=patch.priority,
                    notes=patch.notes,
                    new_agent_id=patch.agent_id,
                    actor=patch.actor,
                    reason=patch.reason,
                )
            except DispatchError as exc:
                if isinstance(exc, InvariantViolation):
                    logger.error("Invariant violation in bulk update of order %s: %s", order_id, exc.detail)
                payload = exc.to_payload()
                results.append(
                    BulkItemResult(order_id=order_id, ok=False, error=ErrorInfo(code=payload["code"], detail=payload["detail"]))
                )
                continue
            results.append(BulkItemResult(order_id=order_id, ok=True, assignment=assignment))
        succeeded = sum(1 for r in results if r.ok)
        logger.info("Bulk update: %d succeeded, %d failed.", succeeded, len(results) - succeeded)
        return BulkUpdateResult(results=results, succeeded=succeeded, failed=len(results) - succeeded)

    def get_assignment(self, order_id: str) -> Assignment:
        """Active assignment for the order, else its most recent record."""
        assignment = assignment_ledger.current(self.store, order_id)
        if assignment is None:
            raise NotFoundError(f"Order assignment not found for order '{order_id}'")
        return assignment

    def assignment_history(self, order_id: str) -> list[Assignment]:
        records = assignment_ledger.history(self.store, order_id)
        if not records and self.store.get_order(order_id) is None:
            raise NotFoundError(f"Order '{order_id}' not found")
        return records

    def list_assignments(self, filters: AssignmentFilter) -> AssignmentPage:
        return assignment_ledger.list_assignments(self.store, filters)

    # --- Reporting ---

    def _window(
        self,
        agent_id: Optional[str] = None,
        assigned_from: Optional[datetime] = None,
        assigned_to: Optional[datetime] = None,
    ) -> list[Assignment]:
        records = self.store.all_assignments()
        if agent_id:
            records = [a for a in records if a.agent_id == agent_id]
        if assigned_from is not None:
            records = [a for a in records if a.assigned_at >= assigned_from]
        if assigned_to is not None:
            records = [a for a in records if a.assigned_at <= assigned_to]
        return records

    def statistics(
        self,
        agent_id: Optional[str] = None,
        assigned_from: Optional[datetime] = None,
        assigned_to: Optional[datetime] = None,
    ) -> AssignmentStatistics:
        records = self._window(agent_id, assigned_from, assigned_to)
        by_status = {s.value: 0 for s in AssignmentStatus}
        for a in records:
            by_status[a.status.value] += 1
        total = len(records)
        completed = [a for a in records if a.status == AssignmentStatus.COMPLETED and a.completed_at]
        minutes = np.array(
            [(a.completed_at - a.assigned_at).total_seconds() / 60.0 for a in completed],
            dtype=np.float64,
        )
        return AssignmentStatistics(
            total_assignments=total,
            active_assignments=by_status[AssignmentStatus.ASSIGNED.value] + by_status[AssignmentStatus.IN_PROGRESS.value],
            by_status=by_status,
            unassigned_orders=self.store.count_unassigned(),
            completion_rate=round(100.0 * len(completed) / total, 2) if total else 0.0,
            average_delivery_minutes=round(float(minutes.mean()), 2) if minutes.size else None,
        )

    def performance(
        self,
        agent_id: Optional[str] = None,
        assigned_from: Optional[datetime] = None,
        assigned_to: Optional[datetime] = None,
    ) -> list[AgentPerformance]:
        """Assignment outcomes grouped by agent, ordered by agent_id."""
        by_agent: dict[str, list[Assignment]] = defaultdict(list)
        for a in self._window(agent_id, assigned_from, assigned_to):
            by_agent[a.agent_id].append(a)
        out = []
        for aid in sorted(by_agent):
            records = by_agent[aid]
            counts = Counter(a.status for a in records)
            done = [a for a in records if a.status == AssignmentStatus.COMPLETED and a.completed_at]
            minutes = np.array(
                [(a.completed_at - a.assigned_at).total_seconds() / 60.0 for a in done],
                dtype=np.float64,
            )
            agent = self.store.get_agent(aid)
            total = len(records)
            out.append(AgentPerformance(
                agent_id=aid,
                agent_name=agent.name if agent else "",
                total_assignments=total,
                completed=counts[AssignmentStatus.COMPLETED],
                failed=counts[AssignmentStatus.FAILED],
                cancelled=counts[AssignmentStatus.CANCELLED],
                in_progress=counts[AssignmentStatus.IN_PROGRESS],
                active=counts[AssignmentStatus.ASSIGNED] + counts[AssignmentStatus.IN_PROGRESS],
                total_reassignments=sum(a.reassignment_count for a in records),
                completion_rate=round(100.0 * counts[AssignmentStatus.COMPLETED] / total, 2),
                average_delivery_minutes=round(float(minutes.mean()), 2) if minutes.size else None,
            ))
        return out

    def search(self, query: AssignmentSearch) -> AssignmentPage:
        """Case-insensitive substring match on order id, customer name and agent name; newest first."""
        records = self._window(None, query.assigned_from, query.assigned_to)
        if query.status is not None:
            records = [a for a in records if a.status == query.status]
        if query.priority is not None:
            records = [a for a in records if a.priority == query.priority]
        if query.order_id:
            needle = query.order_id.strip().lower()
            records = [a for a in records if needle in a.order_id.lower()]
        if query.customer_name:
            needle = query.customer_name.strip().lower()
            orders = {o.order_id: o for o in load_many(self.store.get_order, {a.order_id for a in records})}
            records = [a for a in records if a.order_id in orders and needle in orders[a.order_id].customer_name.lower()]
        if query.agent_name:
            needle = query.agent_name.strip().lower()
            agents = {ag.agent_id: ag for ag in load_many(self.store.get_agent, {a.agent_id for a in records})}
            records = [a for a in records if a.agent_id in agents and needle in agents[a.agent_id].name.lower()]
        records.sort(key=lambda a: (a.assigned_at, a.assignment_id), reverse=True)
        page = records[query.offset:query.offset + query.limit]
        return AssignmentPage(items=page, total=len(records), offset=query.offset, limit=query.limit)

    def export_rows(
        self,
        status: Optional[AssignmentStatus] = None,
        agent_id: Optional[str] = None,
        assigned_from: Optional[datetime] = None,
        assigned_to: Optional[datetime] = None,
    ) -> list[ExportRow]:
        """Every matching assignment joined with its order and agent, newest first."""
        records = self._window(agent_id, assigned_from, assigned_to)
        if status is not None:
            records = [a for a in records if a.status == status]
        records.sort(key=lambda a: (a.assigned_at, a.assignment_id), reverse=True)
        rows = []
        for a in records:
            order = self.store.get_order(a.order_id)
            agent = self.store.get_agent(a.agent_id)
            minutes = None
            if a.completed_at:
                minutes = round((a.completed_at - a.assigned_at).total_seconds() / 60.0)
            rows.append(ExportRow(
                order_id=a.order_id,
                customer_name=order.customer_name if order else "",
                customer_address=order.customer_address if order else "",
                customer_phone=order.customer_phone if order else "",
                agent_name=agent.name if agent else "",
                agent_id=a.agent_id,
                status=a.status,
                priority=a.priority,
                assigned_date=a.assigned_at,
                completed_date=a.completed_at,
                total_amount=order.total_amount if order else 0.0,
                item_count=len(order.items) if order else 0,
                notes=a.notes,
                delivery_time_minutes=minutes,
            ))
        return rows

    def attention(
        self,
        stale_hours: float = ATTENTION_STALE_HOURS,
        reassignment_threshold: int = ATTENTION_REASSIGNMENT_THRESHOLD,
    ) -> list[AttentionItem]:
        """Latest record per order that failed, keeps bouncing between agents, or has sat active too long."""
        latest: dict[str, Assignment] = {}
        for a in self.store.all_assignments():
            seen = latest.get(a.order_id)
            if seen is None or (a.is_active, a.assigned_at) > (seen.is_active, seen.assigned_at):
                latest[a.order_id] = a
        stale_before = utcnow() - timedelta(hours=stale_hours)
        reasons_by_order: dict[str, list[str]] = defaultdict(list)
        for order_id, a in latest.items():
            if a.status == AssignmentStatus.FAILED:
                reasons_by_order[order_id].append("failed")
            if a.reassignment_count >= reassignment_threshold:
                reasons_by_order[order_id].append("frequently_reassigned")
            if a.is_active and a.assigned_at < stale_before:
                reasons_by_order[order_id].append("stale")
        items = [AttentionItem(assignment=latest[oid], reasons=r) for oid, r in reasons_by_order.items()]
        items.sort(key=lambda item: item.assignment.assigned_at)
        return items


_engine: Optional[DispatchEngine] = None


def get_engine() -> DispatchEngine:
    global _engine
    if _engine is None:
        _engine = DispatchEngine(get_store())
    return _engine


def set_engine(engine: Optional[DispatchEngine]) -> None:
    global _engine
    _engine = engine
