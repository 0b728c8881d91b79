"""
Order pool: orders with no active assignment, read oldest first.

enqueue() is the intake hook for the checkout collaborator. mark_assigned / mark_unassigned
are engine-only and idempotent; the delivery-status writes join the engine's Transaction.
"""

import logging
from typing import Iterator, Optional

from dispatch_core.errors import ConflictError, NotFoundError
from dispatch_core.models import DeliveryStatus, Order, OrderCreate, utcnow
from dispatch_core.store import DispatchStore, Transaction, load_many

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class UnassignedOrders:
    """
    Lazy, restartable view of the pool. Each iteration re-reads the store page by page,
    resuming after the last (created_at, order_id) seen, so orders leaving the pool
    mid-iteration never shift later orders out of view. A second pass reflects
    assignments made in between.
    """

    def __init__(self, store: DispatchStore, page_size: int = PAGE_SIZE):
        self._store = store
        self._page_size = page_size

    def __iter__(self) -> Iterator[Order]:
        cursor = None
        while True:
            page = self._store.unassigned_page(cursor, self._page_size)
            if not page:
                return
            for order in load_many(self._store.get_order, [order_id for _, order_id in page]):
                # Assigned since the page was read.
                if order.delivery_status != DeliveryStatus.UNASSIGNED:
                    continue
                yield order
            if len(page) < self._page_size:
                return
            cursor = page[-1]


def list_unassigned(store: DispatchStore) -> UnassignedOrders:
    return UnassignedOrders(store)


def get_order(tx: Transaction, order_id: str) -> Order:
    order = tx.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order '{order_id}' not found")
    return order


def enqueue(tx: Transaction, data: OrderCreate) -> Order:
    """Register a new order as eligible for dispatch."""
    if tx.get_order(data.order_id) is not None:
        raise ConflictError(f"Order '{data.order_id}' already exists")
    total = data.total_amount
    if total is None:
        total = round(sum(item.price * item.quantity for item in data.items), 2)
    now = utcnow()
    order = Order(
        order_id=data.order_id,
        customer_name=data.customer_name,
        customer_address=data.customer_address,
        customer_phone=data.customer_phone,
        customer_email=data.customer_email,
        total_amount=total,
        items=data.items,
        delivery_status=DeliveryStatus.UNASSIGNED,
        created_at=data.created_at or now,
        updated_at=now,
    )
    tx.put_order(order)
    tx.emit("order_enqueued", {"order_id": order.order_id})
    logger.info("Order %s enqueued for dispatch (total=%.2f).", order.order_id, total)
    return order


def set_delivery_status(tx: Transaction, order_id: str, status: DeliveryStatus) -> Optional[Order]:
    """Stage a delivery-status change. Returns None (and logs) when the order already has it."""
    order = get_order(tx, order_id)
    if order.delivery_status == status:
        logger.info("Order %s already %s; no change.", order_id, status.value)
        return None
    updated = order.model_copy(update={"delivery_status": status, "updated_at": utcnow()})
    tx.put_order(updated)
    return updated


def mark_assigned(tx: Transaction, order_id: str) -> Optional[Order]:
    return set_delivery_status(tx, order_id, DeliveryStatus.ASSIGNED)


def mark_unassigned(tx: Transaction, order_id: str) -> Optional[Order]:
    """Return the order to the pool."""
    return set_delivery_status(tx, order_id, DeliveryStatus.UNASSIGNED)
