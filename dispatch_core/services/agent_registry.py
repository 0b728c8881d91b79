"""
Agent registry: agent records, status/capacity, and the load counter.
Backed by the dispatch store; every write is staged on the caller's Transaction.
Only the dispatch engine calls adjust_load, inside the same unit as the assignment change.
"""

import logging
import re
from typing import Optional

from dispatch_core.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from dispatch_core.models import Agent, AgentCreate, AgentStatus, AgentUpdate, utcnow
from dispatch_core.store import DispatchStore, Transaction

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
REQUIRED_FIELDS = ("name", "email", "phone_number", "location")


def _violations(values: dict, required: tuple[str, ...]) -> dict[str, str]:
    """Collect every violated field; required lists fields that must be present and non-empty."""
    out: dict[str, str] = {}
    for name in REQUIRED_FIELDS:
        if name not in values:
            continue
        value = values[name]
        if value is None or not str(value).strip():
            if name in required or value is not None:
                out[name] = "must not be empty"
    email = values.get("email")
    if "email" not in out and email is not None and str(email).strip() and not EMAIL_RE.match(str(email).strip()):
        out["email"] = "must be a valid email address"
    capacity = values.get("capacity")
    if capacity is not None and capacity < 1:
        out["capacity"] = "must be at least 1"
    rating = values.get("rating")
    if rating is not None and not 0.0 <= rating <= 5.0:
        out["rating"] = "must be between 0 and 5"
    return out


def _clean(values: dict) -> dict:
    return {k: v.strip() if isinstance(v, str) else v for k, v in values.items()}


def _auto_status(status: AgentStatus, load: int, capacity: Optional[int]) -> AgentStatus:
    """Active at capacity becomes Busy; Busy below capacity (or unbounded) becomes Active. Inactive is left alone."""
    if status == AgentStatus.ACTIVE and capacity is not None and load >= capacity:
        return AgentStatus.BUSY
    if status == AgentStatus.BUSY and (capacity is None or load < capacity):
        return AgentStatus.ACTIVE
    return status


def get_agent(tx: Transaction, agent_id: str) -> Agent:
    agent = tx.get_agent(agent_id)
    if agent is None:
        raise NotFoundError(f"Delivery agent '{agent_id}' not found")
    return agent


def create_agent(tx: Transaction, data: AgentCreate) -> Agent:
    """Validate, allocate a fresh agent id and stage the new record (load 0)."""
    values = data.model_dump()
    violations = _violations(values, required=REQUIRED_FIELDS)
    if violations:
        raise ValidationError.from_fields(violations)
    values = _clean(values)
    if tx.store.agent_id_for_email(values["email"]):
        raise ConflictError(f"An agent with email '{values['email']}' already exists")
    agent = Agent(agent_id=tx.store.next_agent_id(), current_load=0, **values)
    tx.put_agent(agent)
    tx.emit("agent_created", {"agent_id": agent.agent_id})
    logger.info("Agent %s created (%s, capacity=%s).", agent.agent_id, agent.name, agent.capacity)
    return agent


def update_agent(tx: Transaction, agent_id: str, patch: AgentUpdate, auto_busy: bool = False) -> Agent:
    """
    Merge the fields set on the patch. An explicit capacity of None makes the agent unbounded.
    With auto_busy, a capacity change re-evaluates Active/Busy unless the patch sets status itself.
    """
    agent = get_agent(tx, agent_id)
    values = patch.model_dump(exclude_unset=True)
    violations = _violations(values, required=())
    if violations:
        raise ValidationError.from_fields(violations)
    values = {k: v for k, v in _clean(values).items() if v is not None or k == "capacity"}
    email = values.get("email")
    if email:
        owner = tx.store.agent_id_for_email(email)
        if owner and owner != agent_id:
            raise ConflictError(f"Another agent with email '{email}' already exists")
    capacity = values.get("capacity")
    if capacity is not None and capacity < agent.current_load:
        raise ConflictError(
            f"Capacity {capacity} is below agent '{agent_id}' current load {agent.current_load}"
        )
    update = {**values, "updated_at": utcnow()}
    if auto_busy and "capacity" in values and "status" not in values:
        status = _auto_status(agent.status, agent.current_load, capacity)
        if status != agent.status:
            update["status"] = status
    updated = agent.model_copy(update=update)
    tx.put_agent(updated)
    tx.emit("agent_updated", {"agent_id": agent_id, "fields": sorted(values)})
    logger.info("Agent %s updated: %s.", agent_id, ", ".join(sorted(values)) or "no changes")
    return updated


def delete_agent(tx: Transaction, agent_id: str) -> Agent:
    agent = get_agent(tx, agent_id)
    if agent.current_load > 0:
        raise ConflictError(f"Agent '{agent_id}' has {agent.current_load} active assignment(s)")
    tx.delete_agent(agent_id)
    tx.emit("agent_deleted", {"agent_id": agent_id})
    logger.info("Agent %s deleted.", agent_id)
    return agent


def adjust_load(tx: Transaction, agent_id: str, delta: int, auto_busy: bool = False) -> Agent:
    """
    Move the agent's load counter by delta. Engine-only.
    The result must stay within [0, capacity]; anything else is a defect upstream.
    With auto_busy, an Active agent reaching capacity becomes Busy and a Busy agent dropping below it becomes Active.
    """
    agent = tx.get_agent(agent_id)
    if agent is None:
        raise InvariantViolation(f"Load adjustment for unknown agent '{agent_id}'")
    new_load = agent.current_load + delta
    if new_load < 0:
        raise InvariantViolation(f"Agent '{agent_id}' load would become negative ({new_load})")
    if agent.capacity is not None and new_load > agent.capacity:
        raise InvariantViolation(f"Agent '{agent_id}' load {new_load} would exceed capacity {agent.capacity}")
    update: dict = {"current_load": new_load, "updated_at": utcnow()}
    if auto_busy and agent.capacity is not None:
        update["status"] = _auto_status(agent.status, new_load, agent.capacity)
    updated = agent.model_copy(update=update)
    tx.put_agent(updated)
    return updated


def record_completion(tx: Transaction, agent_id: str) -> Agent:
    agent = tx.get_agent(agent_id)
    if agent is None:
        raise InvariantViolation(f"Completion recorded for unknown agent '{agent_id}'")
    updated = agent.model_copy(update={"completed_deliveries": agent.completed_deliveries + 1})
    tx.put_agent(updated)
    return updated


def list_agents(
    store: DispatchStore,
    status: Optional[AgentStatus] = None,
    location: Optional[str] = None,
) -> list[Agent]:
    """Agents matching the optional filters, ordered by agent_id."""
    agents = store.list_agents()
    if status is not None:
        agents = [a for a in agents if a.status == status]
    if location:
        wanted = location.strip().lower()
        agents = [a for a in agents if a.location.strip().lower() == wanted]
    return agents
