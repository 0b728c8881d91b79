"""
In-memory activity log for dispatch events (assignment created, reassigned, status changed, agent CRUD).
The engine emits after each commit. With the Redis backend, events are also published on a
pub/sub channel and a background thread folds other processes' events into the local log.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from dispatch_core.config import ACTIVITY_MAX_EVENTS, REDIS_URL

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "dispatch_activity"
# Tags this process's own publications so the subscriber does not log them twice.
_ORIGIN = f"{os.getpid()}-{id(object())}"


@dataclass
class ActivityEvent:
    """A single dispatch activity event."""

    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


_events: list[ActivityEvent] = []
_lock = threading.Lock()
_publish = False


def emit(event_type: str, data: dict[str, Any] | None = None) -> None:
    """Append an event to the activity log and, when enabled, publish it."""
    with _lock:
        _events.append(ActivityEvent(type=event_type, data=data or {}))
        while len(_events) > ACTIVITY_MAX_EVENTS:
            _events.pop(0)
    if _publish:
        publish_event(event_type, data or {})


def get_recent(limit: int = 100) -> list[dict]:
    """Return the most recent events (newest last). Each item is dict with ts, type, data."""
    with _lock:
        out = [
            {"ts": e.ts, "type": e.type, "data": e.data}
            for e in _events[-limit:]
        ]
    return out


def clear() -> None:
    with _lock:
        _events.clear()


def _append_remote(event_type: str, data: dict[str, Any]) -> None:
    with _lock:
        _events.append(ActivityEvent(type=event_type, data=data))
        while len(_events) > ACTIVITY_MAX_EVENTS:
            _events.pop(0)


def _redis_subscriber_thread() -> None:
    """Run in a daemon thread: subscribe to the Redis channel and append other processes' events."""
    try:
        import redis
        r = redis.from_url(REDIS_URL, decode_responses=True)
        pubsub = r.pubsub()
        pubsub.subscribe(ACTIVITY_CHANNEL)
        logger.info("Activity subscriber listening on channel %s", ACTIVITY_CHANNEL)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                payload = json.loads(message["data"])
                if payload.get("origin") == _ORIGIN:
                    continue
                _append_remote(payload.get("type", "unknown"), payload.get("data", {}))
            except (ValueError, AttributeError) as e:
                logger.warning("Activity message parse error: %s", e)
    except Exception as e:
        logger.warning("Activity Redis subscriber failed: %s", e)


def start_redis_subscriber() -> None:
    """Start the background listener and publish local events from now on."""
    global _publish
    _publish = True
    t = threading.Thread(target=_redis_subscriber_thread, daemon=True)
    t.start()


def publish_event(event_type: str, data: dict[str, Any]) -> None:
    """Publish an event to Redis for other API processes; errors are logged, not raised."""
    try:
        import redis
        r = redis.from_url(REDIS_URL, decode_responses=True)
        payload = json.dumps({"type": event_type, "data": data, "origin": _ORIGIN}, default=str)
        r.publish(ACTIVITY_CHANNEL, payload)
    except Exception as e:
        logger.warning("Activity publish failed: %s", e)
