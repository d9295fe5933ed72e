"""Real-time fanout of conversation events to live viewers.

Every connection (a customer widget or an operator dashboard) owns one
Subscription with a bounded queue. Publishing is at-most-once: an event
goes to the subscriptions present at publish time, and a subscriber whose
queue is full misses it. Nothing is persisted here; reconnecting clients
refetch history.

Rooms are keyed by conversation id and each room has its own lock, so
traffic in one room never waits on another.
"""

from __future__ import annotations

import asyncio
import json
import uuid
import weakref
from typing import Any

import structlog

from concierge.core.exceptions import RedisConnectionError
from concierge.db.redis import RedisClient

logger = structlog.get_logger(__name__)

_CHANNEL_PREFIX = "fanout:"


class Subscription:
    """One connection's view of a room.

    Remembers every message id it has accepted so an event that arrives
    twice (local echo plus server push, or two relays) is shown once.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self.id = uuid.uuid4().hex
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_queue)
        self._seen: set[str] = set()

    def remember(self, message_id: str) -> None:
        """Record a message the client already shows (its own optimistic echo)."""
        self._seen.add(str(message_id))

    def offer(self, event: dict[str, Any]) -> bool:
        """Queue ``event`` unless it is a duplicate or the queue is full.

        Returns True when the event was queued.
        """
        message_id = event.get("message_id")
        if message_id is not None and str(message_id) in self._seen:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "fanout_subscriber_queue_full",
                subscription_id=self.id,
                message_id=message_id,
            )
            return False
        if message_id is not None:
            self._seen.add(str(message_id))
        return True

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()

    def drain_nowait(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class FanoutHub:
    """In-process room registry.

    A room exists only while it has subscribers. Room locks are weakly
    held, so a room nobody is touching leaves nothing behind.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._rooms: dict[str, set[Subscription]] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._relay: RedisFanoutRelay | None = None

    def new_subscription(self) -> Subscription:
        return Subscription(max_queue=self._max_queue)

    def attach_relay(self, relay: RedisFanoutRelay) -> None:
        self._relay = relay

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def subscribe(self, room_id: str, subscription: Subscription) -> None:
        async with self._lock_for(room_id):
            self._rooms.setdefault(room_id, set()).add(subscription)
        logger.debug("fanout_subscribed", room_id=room_id, subscription_id=subscription.id)

    async def unsubscribe(self, room_id: str, subscription: Subscription) -> None:
        if room_id not in self._rooms:
            return
        async with self._lock_for(room_id):
            members = self._rooms.get(room_id)
            if members is None:
                return
            members.discard(subscription)
            if not members:
                del self._rooms[room_id]
        logger.debug("fanout_unsubscribed", room_id=room_id, subscription_id=subscription.id)

    async def subscriber_count(self, room_id: str) -> int:
        if room_id not in self._rooms:
            return 0
        async with self._lock_for(room_id):
            return len(self._rooms.get(room_id, ()))

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    async def publish(self, room_id: str, event: dict[str, Any]) -> int:
        """Deliver ``event`` to this process's subscribers, then relay it.

        Returns the number of local subscriptions that queued the event.
        A relay failure is logged and does not fail the caller; other
        nodes simply miss the event.
        """
        delivered = await self.deliver_local(room_id, event)
        if self._relay is not None:
            try:
                await self._relay.forward(room_id, event)
            except RedisConnectionError as e:
                logger.warning(
                    "fanout_relay_publish_failed",
                    room_id=room_id,
                    event_type=event.get("type"),
                    error=str(e),
                )
        return delivered

    async def deliver_local(self, room_id: str, event: dict[str, Any]) -> int:
        delivered = 0
        if room_id in self._rooms:
            async with self._lock_for(room_id):
                for subscription in tuple(self._rooms.get(room_id, ())):
                    if subscription.offer(event):
                        delivered += 1
        logger.debug(
            "fanout_published",
            room_id=room_id,
            event_type=event.get("type"),
            delivered=delivered,
        )
        return delivered


class RedisFanoutRelay:
    """Bridges FanoutHubs in several processes over Redis pub/sub.

    Each process publishes to ``fanout:{room_id}`` tagged with its node id
    and listens on ``fanout:*``, handing foreign events to its local hub.
    """

    def __init__(self, hub: FanoutHub, redis: RedisClient, node_id: str | None = None) -> None:
        self._hub = hub
        self._redis = redis
        self.node_id = node_id or uuid.uuid4().hex
        self._listener: asyncio.Task | None = None

    async def forward(self, room_id: str, event: dict[str, Any]) -> None:
        payload = json.dumps(
            {"origin": self.node_id, "room_id": room_id, "event": event},
            default=str,
        )
        await self._redis.publish(f"{_CHANNEL_PREFIX}{room_id}", payload)

    async def handle_payload(self, raw: str | bytes) -> int:
        """Deliver one relayed payload locally. Own echoes are ignored."""
        try:
            payload = json.loads(raw)
            origin = payload["origin"]
            room_id = payload["room_id"]
            event = payload["event"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("fanout_relay_bad_payload", error=str(e))
            return 0
        if origin == self.node_id:
            return 0
        return await self._hub.deliver_local(room_id, event)

    async def start(self) -> None:
        pubsub = await self._redis.psubscribe(f"{_CHANNEL_PREFIX}*")
        self._listener = asyncio.create_task(self._listen(pubsub))
        logger.info("fanout_relay_started", node_id=self.node_id)

    async def _listen(self, pubsub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                await self.handle_payload(message["data"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("fanout_relay_listener_failed", error=str(e))
        finally:
            await pubsub.aclose()

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        logger.info("fanout_relay_stopped", node_id=self.node_id)
