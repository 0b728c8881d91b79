"""Demo agents and orders for local runs (SEED_DEMO_DATA=true)."""

import logging
from datetime import timedelta

from dispatch_core.errors import ConflictError
from dispatch_core.models import AgentCreate, OrderCreate, OrderItem, utcnow
from dispatch_core.services.dispatch_engine import DispatchEngine

logger = logging.getLogger(__name__)

MOCK_AGENTS = [
    AgentCreate(name="Kamal Perera", email="kamal@example.com", phone_number="+94771234567", location="Colombo", capacity=2),
    AgentCreate(name="Nimali Silva", email="nimali@example.com", phone_number="+94772345678", location="Kandy", capacity=3),
    AgentCreate(name="Ruwan Jayasuriya", email="ruwan@example.com", phone_number="+94773456789", location="Colombo"),
]

MOCK_ORDERS = [
    ("CBC0001", "Amaya Fernando", "12 Temple Rd, Colombo", [OrderItem(name="Carrots 1kg", quantity=2, price=350.0)]),
    ("CBC0002", "Dilan Rajapaksa", "4 Lake View, Kandy", [OrderItem(name="Red rice 5kg", quantity=1, price=1450.0)]),
    ("CBC0003", "Sahan Wickrama", "88 Galle Rd, Colombo", [OrderItem(name="Leeks 500g", quantity=3, price=180.0)]),
    ("CBC0004", "Tharushi Bandara", "21 Hill St, Nuwara Eliya", [OrderItem(name="Potatoes 2kg", quantity=1, price=520.0)]),
]


def seed_mock_data(engine: DispatchEngine) -> None:
    """Create demo agents (only into an empty registry) and demo orders that don't exist yet."""
    seeded = 0
    if not engine.list_agents():
        for data in MOCK_AGENTS:
            engine.create_agent(data)
            seeded += 1
    base = utcnow() - timedelta(hours=1)
    for i, (order_id, customer, address, items) in enumerate(MOCK_ORDERS):
        try:
            engine.enqueue_order(
                OrderCreate(
                    order_id=order_id,
                    customer_name=customer,
                    customer_address=address,
                    items=items,
                    created_at=base + timedelta(minutes=i),
                )
            )
            seeded += 1
        except ConflictError:
            continue
    if seeded:
        logger.info("Seeded %d demo records (existing records left unchanged).", seeded)
