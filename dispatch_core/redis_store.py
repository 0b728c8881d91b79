"""
Redis-backed dispatch store.

Records are pydantic JSON under AGENT:{id}, ORDER:{id}, ASSIGNMENT:{id}.
Indexes: agent id set, email hash, unassigned-order zset (score = created_at),
active-assignment hash (order -> assignment), per-order history list and a
time-ordered assignment zset. A Transaction is written in one MULTI/EXEC pipeline.
"""

import logging
from typing import Optional

from dispatch_core.config import REDIS_CONN_TIMEOUT, REDIS_URL
from dispatch_core.locks import RedisLocks
from dispatch_core.models import Agent, Assignment, DeliveryStatus, Order
from dispatch_core.store import DispatchStore, PoolCursor, Transaction, _email_key

logger = logging.getLogger(__name__)

AGENT_PREFIX = "agent:"
AGENT_IDS_SET = "agents:ids"
AGENT_EMAIL_HASH = "agents:email"
AGENT_NEXT_ID = "agents:next_id"
ORDER_PREFIX = "order:"
ORDERS_UNASSIGNED_ZSET = "orders:unassigned"
ASSIGNMENT_PREFIX = "assignment:"
ORDER_ASSIGNMENTS_PREFIX = "order_assignments:"
ASSIGNMENTS_ACTIVE_HASH = "assignments:active"
ASSIGNMENTS_BY_TIME_ZSET = "assignments:by_time"

_redis_client = None


def _redis():
    import redis
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=REDIS_CONN_TIMEOUT,
        )
    return _redis_client


class RedisStore(DispatchStore):
    def __init__(self, client=None):
        self._r = client if client is not None else _redis()
        self.locks = RedisLocks(self._r)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        raw = self._r.get(f"{AGENT_PREFIX}{agent_id}")
        if not raw:
            return None
        return Agent.model_validate_json(raw)

    def list_agents(self) -> list[Agent]:
        ids = sorted(self._r.smembers(AGENT_IDS_SET))
        if not ids:
            return []
        raws = self._r.mget([f"{AGENT_PREFIX}{i}" for i in ids])
        return [Agent.model_validate_json(raw) for raw in raws if raw]

    def agent_id_for_email(self, email: str) -> Optional[str]:
        return self._r.hget(AGENT_EMAIL_HASH, _email_key(email))

    def next_agent_id(self) -> str:
        while True:
            agent_id = f"DA{int(self._r.incr(AGENT_NEXT_ID)):02d}"
            if not self._r.exists(f"{AGENT_PREFIX}{agent_id}"):
                return agent_id

    def get_order(self, order_id: str) -> Optional[Order]:
        raw = self._r.get(f"{ORDER_PREFIX}{order_id}")
        if not raw:
            return None
        return Order.model_validate_json(raw)

    def unassigned_page(self, after: Optional[PoolCursor], count: int) -> list[PoolCursor]:
        if count <= 0:
            return []
        r = self._r
        if after is None:
            rows = r.zrange(ORDERS_UNASSIGNED_ZSET, 0, count - 1, withscores=True)
        else:
            score, last_id = after
            # Equal scores are ordered by member, the same tie-break as the cursor.
            ties = [
                (member, s)
                for member, s in r.zrangebyscore(ORDERS_UNASSIGNED_ZSET, score, score, withscores=True)
                if member > last_id
            ]
            rest = r.zrangebyscore(
                ORDERS_UNASSIGNED_ZSET, f"({score!r}", "+inf", start=0, num=count, withscores=True
            )
            rows = (ties + list(rest))[:count]
        return [(float(s), member) for member, s in rows]

    def count_unassigned(self) -> int:
        return self._r.zcard(ORDERS_UNASSIGNED_ZSET)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        raw = self._r.get(f"{ASSIGNMENT_PREFIX}{assignment_id}")
        if not raw:
            return None
        return Assignment.model_validate_json(raw)

    def active_assignment_id(self, order_id: str) -> Optional[str]:
        return self._r.hget(ASSIGNMENTS_ACTIVE_HASH, order_id)

    def active_assignment_ids(self) -> list[str]:
        return list(self._r.hvals(ASSIGNMENTS_ACTIVE_HASH))

    def assignment_ids_for_order(self, order_id: str) -> list[str]:
        return list(self._r.lrange(f"{ORDER_ASSIGNMENTS_PREFIX}{order_id}", 0, -1))

    def all_assignments(self) -> list[Assignment]:
        ids = self._r.zrange(ASSIGNMENTS_BY_TIME_ZSET, 0, -1)
        if not ids:
            return []
        raws = self._r.mget([f"{ASSIGNMENT_PREFIX}{i}" for i in ids])
        return [Assignment.model_validate_json(raw) for raw in raws if raw]

    def commit(self, tx: Transaction) -> None:
        """Write the whole transaction in one MULTI/EXEC. Index reads happen first, under the caller's locks."""
        r = self._r
        touched = sorted(tx.touched_orders())
        current = dict(zip(touched, r.hmget(ASSIGNMENTS_ACTIVE_HASH, touched))) if touched else {}
        active = tx.resolve_active(current)
        old_agents = {aid: self.get_agent(aid) for aid in set(tx.agents) | tx.deleted_agents}

        pipe = r.pipeline(transaction=True)
        for agent_id in tx.deleted_agents:
            old = old_agents.get(agent_id)
            pipe.delete(f"{AGENT_PREFIX}{agent_id}")
            pipe.srem(AGENT_IDS_SET, agent_id)
            if old is not None:
                pipe.hdel(AGENT_EMAIL_HASH, _email_key(old.email))
        for agent in tx.agents.values():
            old = old_agents.get(agent.agent_id)
            if old is not None and _email_key(old.email) != _email_key(agent.email):
                pipe.hdel(AGENT_EMAIL_HASH, _email_key(old.email))
            pipe.set(f"{AGENT_PREFIX}{agent.agent_id}", agent.model_dump_json())
            pipe.sadd(AGENT_IDS_SET, agent.agent_id)
            pipe.hset(AGENT_EMAIL_HASH, _email_key(agent.email), agent.agent_id)
        for order in tx.orders.values():
            pipe.set(f"{ORDER_PREFIX}{order.order_id}", order.model_dump_json())
            if order.delivery_status == DeliveryStatus.UNASSIGNED:
                pipe.zadd(ORDERS_UNASSIGNED_ZSET, {order.order_id: order.created_at.timestamp()})
            else:
                pipe.zrem(ORDERS_UNASSIGNED_ZSET, order.order_id)
        for assignment in tx.assignments.values():
            pipe.set(f"{ASSIGNMENT_PREFIX}{assignment.assignment_id}", assignment.model_dump_json())
        for assignment_id in tx.new_assignments:
            assignment = tx.assignments[assignment_id]
            pipe.rpush(f"{ORDER_ASSIGNMENTS_PREFIX}{assignment.order_id}", assignment_id)
            pipe.zadd(ASSIGNMENTS_BY_TIME_ZSET, {assignment_id: assignment.assigned_at.timestamp()})
        for order_id, assignment_id in active.items():
            if assignment_id is None:
                pipe.hdel(ASSIGNMENTS_ACTIVE_HASH, order_id)
            else:
                pipe.hset(ASSIGNMENTS_ACTIVE_HASH, order_id, assignment_id)
        pipe.execute()

    def ping(self) -> bool:
        return bool(self._r.ping())

    def clear(self) -> None:
        """Remove every dispatch key (tests)."""
        r = self._r
        patterns = [f"{AGENT_PREFIX}*", f"{ORDER_PREFIX}*", f"{ASSIGNMENT_PREFIX}*", f"{ORDER_ASSIGNMENTS_PREFIX}*"]
        keys = [AGENT_IDS_SET, AGENT_EMAIL_HASH, AGENT_NEXT_ID, ORDERS_UNASSIGNED_ZSET,
                ASSIGNMENTS_ACTIVE_HASH, ASSIGNMENTS_BY_TIME_ZSET]
        for pattern in patterns:
            keys.extend(r.scan_iter(match=pattern))
        if keys:
            r.delete(*keys)
