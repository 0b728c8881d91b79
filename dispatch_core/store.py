"""
Dispatch store: durable records for agents, orders and assignments.

Every engine operation stages its writes in a Transaction and hands it to
DispatchStore.commit(), which applies all of them or none. Secondary indexes
(active assignment per order, unassigned pool, per-order history) are derived
from the staged records at commit time, never written separately.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from dispatch_core.config import DISPATCH_LOCK_TIMEOUT_SECONDS, DISPATCH_STORE
from dispatch_core.locks import KeyedLocks
from dispatch_core.models import Agent, Assignment, DeliveryStatus, Order

logger = logging.getLogger(__name__)

# Position in the unassigned pool: (created_at timestamp, order_id).
PoolCursor = tuple[float, str]


@dataclass
class Transaction:
    """Writes staged by one atomic unit. Reads fall through to the store for unstaged records."""

    store: "DispatchStore"
    agents: dict[str, Agent] = field(default_factory=dict)
    deleted_agents: set[str] = field(default_factory=set)
    orders: dict[str, Order] = field(default_factory=dict)
    assignments: dict[str, Assignment] = field(default_factory=dict)
    new_assignments: list[str] = field(default_factory=list)
    events: list[tuple[str, dict]] = field(default_factory=list)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        if agent_id in self.deleted_agents:
            return None
        if agent_id in self.agents:
            return self.agents[agent_id]
        return self.store.get_agent(agent_id)

    def get_order(self, order_id: str) -> Optional[Order]:
        if order_id in self.orders:
            return self.orders[order_id]
        return self.store.get_order(order_id)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        if assignment_id in self.assignments:
            return self.assignments[assignment_id]
        return self.store.get_assignment(assignment_id)

    def get_active(self, order_id: str) -> Optional[Assignment]:
        """Active assignment for the order as it would be after commit."""
        active_id = self.resolve_active({order_id: self.store.active_assignment_id(order_id)})[order_id]
        return self.get_assignment(active_id) if active_id else None

    def put_agent(self, agent: Agent) -> None:
        self.deleted_agents.discard(agent.agent_id)
        self.agents[agent.agent_id] = agent

    def delete_agent(self, agent_id: str) -> None:
        self.agents.pop(agent_id, None)
        self.deleted_agents.add(agent_id)

    def put_order(self, order: Order) -> None:
        self.orders[order.order_id] = order

    def put_assignment(self, assignment: Assignment, new: bool = False) -> None:
        self.assignments[assignment.assignment_id] = assignment
        if new and assignment.assignment_id not in self.new_assignments:
            self.new_assignments.append(assignment.assignment_id)

    def emit(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def resolve_active(self, current: dict[str, Optional[str]]) -> dict[str, Optional[str]]:
        """Fold staged assignments (in staging order) over the current active index."""
        final = dict(current)
        for assignment in self.assignments.values():
            oid = assignment.order_id
            if oid not in final:
                continue
            if assignment.is_active:
                final[oid] = assignment.assignment_id
            elif final[oid] == assignment.assignment_id:
                final[oid] = None
        return final

    def touched_orders(self) -> set[str]:
        return {a.order_id for a in self.assignments.values()}


class DispatchStore:
    """Interface implemented by MemoryStore and RedisStore."""

    locks = None  # KeyedLocks or RedisLocks

    def begin(self) -> Transaction:
        return Transaction(store=self)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        raise NotImplementedError

    def list_agents(self) -> list[Agent]:
        """All agents ordered by agent_id."""
        raise NotImplementedError

    def agent_id_for_email(self, email: str) -> Optional[str]:
        raise NotImplementedError

    def next_agent_id(self) -> str:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    def unassigned_page(self, after: Optional[PoolCursor], count: int) -> list[PoolCursor]:
        """
        Up to count unassigned orders strictly after the cursor, oldest first.
        Each entry is (created_at timestamp, order_id), usable as the next cursor.
        """
        raise NotImplementedError

    def count_unassigned(self) -> int:
        raise NotImplementedError

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        raise NotImplementedError

    def active_assignment_id(self, order_id: str) -> Optional[str]:
        raise NotImplementedError

    def active_assignment_ids(self) -> list[str]:
        raise NotImplementedError

    def assignment_ids_for_order(self, order_id: str) -> list[str]:
        """Every assignment ever created for the order, oldest first."""
        raise NotImplementedError

    def all_assignments(self) -> list[Assignment]:
        raise NotImplementedError

    def commit(self, tx: Transaction) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


def _email_key(email: str) -> str:
    return email.strip().lower()


class MemoryStore(DispatchStore):
    """In-process store. Records are copied in and out so callers never share state."""

    def __init__(self, lock_timeout: float = DISPATCH_LOCK_TIMEOUT_SECONDS):
        self.locks = KeyedLocks(timeout=lock_timeout)
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._emails: dict[str, str] = {}
        self._agent_seq = 0
        self._orders: dict[str, Order] = {}
        self._assignments: dict[str, Assignment] = {}
        self._active: dict[str, str] = {}
        self._by_order: dict[str, list[str]] = defaultdict(list)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return [self._agents[k].model_copy(deep=True) for k in sorted(self._agents)]

    def agent_id_for_email(self, email: str) -> Optional[str]:
        with self._lock:
            return self._emails.get(_email_key(email))

    def next_agent_id(self) -> str:
        with self._lock:
            while True:
                self._agent_seq += 1
                agent_id = f"DA{self._agent_seq:02d}"
                if agent_id not in self._agents:
                    return agent_id

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def unassigned_page(self, after: Optional[PoolCursor], count: int) -> list[PoolCursor]:
        with self._lock:
            pool = sorted(
                (o.created_at.timestamp(), o.order_id)
                for o in self._orders.values()
                if o.delivery_status == DeliveryStatus.UNASSIGNED
            )
        if after is not None:
            pool = [entry for entry in pool if entry > after]
        return pool[:count]

    def count_unassigned(self) -> int:
        with self._lock:
            return sum(1 for o in self._orders.values() if o.delivery_status == DeliveryStatus.UNASSIGNED)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        with self._lock:
            assignment = self._assignments.get(assignment_id)
            return assignment.model_copy(deep=True) if assignment else None

    def active_assignment_id(self, order_id: str) -> Optional[str]:
        with self._lock:
            return self._active.get(order_id)

    def active_assignment_ids(self) -> list[str]:
        with self._lock:
            return list(self._active.values())

    def assignment_ids_for_order(self, order_id: str) -> list[str]:
        with self._lock:
            return list(self._by_order.get(order_id, ()))

    def all_assignments(self) -> list[Assignment]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._assignments.values()]

    def commit(self, tx: Transaction) -> None:
        with self._lock:
            active = tx.resolve_active({oid: self._active.get(oid) for oid in tx.touched_orders()})
            for agent_id in tx.deleted_agents:
                old = self._agents.pop(agent_id, None)
                if old is not None:
                    self._emails.pop(_email_key(old.email), None)
            for agent in tx.agents.values():
                old = self._agents.get(agent.agent_id)
                if old is not None:
                    self._emails.pop(_email_key(old.email), None)
                self._agents[agent.agent_id] = agent.model_copy(deep=True)
                self._emails[_email_key(agent.email)] = agent.agent_id
            for order in tx.orders.values():
                self._orders[order.order_id] = order.model_copy(deep=True)
            for assignment in tx.assignments.values():
                self._assignments[assignment.assignment_id] = assignment.model_copy(deep=True)
            for assignment_id in tx.new_assignments:
                self._by_order[tx.assignments[assignment_id].order_id].append(assignment_id)
            _apply_active(self._active, active)

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._reset()


def _apply_active(index: dict[str, str], resolved: dict[str, Optional[str]]) -> None:
    for order_id, assignment_id in resolved.items():
        if assignment_id is None:
            index.pop(order_id, None)
        else:
            index[order_id] = assignment_id


def load_many(getter, ids: Iterable[str]) -> list:
    """Fetch records by id, skipping ids whose record is gone."""
    out = []
    for record_id in ids:
        record = getter(record_id)
        if record is not None:
            out.append(record)
    return out


_store: Optional[DispatchStore] = None


def get_store() -> DispatchStore:
    """Process-wide store selected by DISPATCH_STORE."""
    global _store
    if _store is None:
        if DISPATCH_STORE == "redis":
            from dispatch_core.redis_store import RedisStore
            _store = RedisStore()
        else:
            _store = MemoryStore()
        logger.info("Dispatch store backend: %s", type(_store).__name__)
    return _store


def set_store(store: Optional[DispatchStore]) -> None:
    """Swap the process-wide store (tests, alternate backends)."""
    global _store
    _store = store
