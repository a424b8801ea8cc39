"""Change feed: per-queue "queue changed" broadcast.

The engine publishes one ``QueueChanged`` event after every committed
mutation.  Subscribers use it as a signal to re-read the queue; the feed
is never the source of truth, so a subscriber that missed events simply
reads again.  Events carry the queue ``revision`` bumped in the same
transaction, which lets subscribers drop duplicates and stale events.

Two transports are provided: Redis pub/sub (one channel per queue) for
multi-process deployments, and an in-process broadcaster used when Redis
is not configured and in tests.
"""

from __future__ import annotations

import json
import logging
import queue as queue_mod
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import redis

from cache import get_redis
from models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueChanged:
    queue_id: int
    revision: int
    reason: str
    entry_id: Optional[int] = None
    at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "QueueChanged":
        data = json.loads(raw)
        data["at"] = datetime.fromisoformat(data["at"])
        return cls(**data)


def channel_name(queue_id: int) -> str:
    return f"waiting_queue:{queue_id}:updates"


class Subscription:
    """Stream of events for one queue.  Use as a context manager."""

    queue_id: int

    def get(self, timeout: Optional[float] = None) -> Optional[QueueChanged]:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ChangeFeed:
    def publish(self, event: QueueChanged) -> None:
        raise NotImplementedError

    def subscribe(self, queue_id: int) -> Subscription:
        raise NotImplementedError


class _LocalSubscription(Subscription):
    def __init__(self, feed: "InMemoryChangeFeed", queue_id: int) -> None:
        self.queue_id = queue_id
        self._feed = feed
        self._events: "queue_mod.Queue[QueueChanged]" = queue_mod.Queue()
        self.closed = False

    def _deliver(self, event: QueueChanged) -> None:
        self._events.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[QueueChanged]:
        try:
            return self._events.get(timeout=timeout)
        except queue_mod.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._remove(self)


class InMemoryChangeFeed(ChangeFeed):
    """Fan-out to subscribers living in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[_LocalSubscription]] = {}

    def publish(self, event: QueueChanged) -> None:
        with self._lock:
            targets = list(self._subscribers.get(event.queue_id, ()))
        for sub in targets:
            sub._deliver(event)

    def subscribe(self, queue_id: int) -> Subscription:
        sub = _LocalSubscription(self, queue_id)
        with self._lock:
            self._subscribers.setdefault(queue_id, []).append(sub)
        return sub

    def subscriber_count(self, queue_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(queue_id, ()))

    def _remove(self, sub: _LocalSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.queue_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.queue_id, None)


class _RedisSubscription(Subscription):
    def __init__(self, client: redis.Redis, queue_id: int) -> None:
        self.queue_id = queue_id
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel_name(queue_id))

    def get(self, timeout: Optional[float] = None) -> Optional[QueueChanged]:
        message = self._pubsub.get_message(timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        try:
            return QueueChanged.from_json(message["data"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping malformed feed message on %s: %s", channel_name(self.queue_id), e)
            return None

    def close(self) -> None:
        self._pubsub.close()


class RedisChangeFeed(ChangeFeed):
    """One Redis pub/sub channel per queue."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def publish(self, event: QueueChanged) -> None:
        try:
            self.client.publish(channel_name(event.queue_id), event.to_json())
        except redis.RedisError as e:
            # Subscribers recover on their next read.
            logger.warning("Redis publish error for queue %s: %s", event.queue_id, e)

    def subscribe(self, queue_id: int) -> Subscription:
        return _RedisSubscription(self.client, queue_id)


def build_change_feed() -> ChangeFeed:
    client = get_redis()
    if client is not None:
        logger.info("Change feed: Redis pub/sub")
        return RedisChangeFeed(client)
    logger.info("Change feed: in-process (REDIS_URL not set)")
    return InMemoryChangeFeed()
