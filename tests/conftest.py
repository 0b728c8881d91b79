"""Pytest fixtures: a fresh in-memory store and engine per test, plus record builders."""

import pytest

from dispatch_core import activity
from dispatch_core.services.dispatch_engine import DispatchEngine, set_engine
from dispatch_core.store import MemoryStore, set_store
from tests.factories import agent_payload, order_payload


@pytest.fixture
def store():
    return MemoryStore(lock_timeout=5)


@pytest.fixture
def engine(store):
    eng = DispatchEngine(store, auto_busy=False)
    set_store(store)
    set_engine(eng)
    activity.clear()
    yield eng
    set_engine(None)
    set_store(None)
    activity.clear()


@pytest.fixture
def make_agent(engine):
    def _make(n: int, capacity=None, **overrides):
        return engine.create_agent(agent_payload(n, capacity=capacity, **overrides))
    return _make


@pytest.fixture
def make_order(engine):
    def _make(order_id: str, minutes_ago: int = 0):
        return engine.enqueue_order(order_payload(order_id, minutes_ago=minutes_ago))
    return _make


@pytest.fixture
def dispatch_floor(make_agent, make_order):
    """Agents DA01 (capacity 2), DA02, DA03 and orders CBC0001..CBC0004 (oldest first)."""
    agents = [make_agent(1, capacity=2), make_agent(2), make_agent(3)]
    orders = [make_order(f"CBC000{i}", minutes_ago=10 - i) for i in range(1, 5)]
    return agents, orders
