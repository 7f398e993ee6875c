"""Subscription registry and broadcast dispatcher.

Learn: Two responsibilities, one module:

1. SubscriptionRegistry: which live connections want which feeds.
   Mutated by the transport (connect / disconnect) and by client requests
   (subscribe / unsubscribe). Read by the dispatcher on every publish.
2. BroadcastDispatcher: owns the latest value per feed and fans each
   update out to the registry's current subscribers.

Locking rules:
- The registry and the feed-state store each have their own lock. They are
  written by disjoint call paths (client messages vs. the publisher) and
  never need to be held together.
- No lock is held across an await. The dispatcher takes a snapshot of the
  subscribers, releases the lock, then sends. A stalled socket can slow
  its own delivery but never blocks registry mutations.

Delivery is best-effort: the snapshot may be stale by the time it is used.
A connection whose send fails is unregistered on the spot, exactly as if
the transport had reported it closed.
"""

import asyncio
import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Protocol, Union

import structlog

from feedrelay.realtime import protocol

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_feed_id(value: Any) -> bool:
    """Feed ids are positive integers. bool is an int subclass, so exclude it."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class Channel(Protocol):
    """Outbound side of one client connection, provided by the transport."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, data: str) -> bool:
        """Deliver one text frame. Returns False (or raises) on failure."""
        ...

    async def close(self) -> None:
        """Stop accepting frames and shut the connection down."""
        ...


# ═══════════════════════════════════════════════════════════
# Subscription registry
# ═══════════════════════════════════════════════════════════


@dataclass
class Connection:
    """Registry state for one client session."""
    id: int
    channel: Channel
    subscribed_feeds: set[int] = field(default_factory=set)
    connected_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Subscriber:
    """Snapshot entry handed to the dispatcher: enough to send, nothing more."""
    connection_id: int
    channel: Channel


class SubscriptionRegistry:
    """Thread-safe map of connection id → subscribed feed ids.

    Learn: A reverse index (feed id → connection ids) is kept alongside the
    forward map so subscribers_of() is a dict lookup rather than a scan of
    every connection. Both are only touched under self._lock, so readers
    never see one updated without the other.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: dict[int, Connection] = {}
        self._by_feed: dict[int, set[int]] = {}
        self._ids = itertools.count(1)

    def register(self, channel: Channel) -> int:
        """Allocate an id for a newly established connection."""
        with self._lock:
            connection_id = next(self._ids)
            self._connections[connection_id] = Connection(
                id=connection_id, channel=channel,
            )
        return connection_id

    def unregister(self, connection_id: int) -> bool:
        """Drop all state for a connection. Safe to call more than once.

        Returns True only for the call that actually removed it.
        """
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return False
            for feed_id in conn.subscribed_feeds:
                self._discard_subscriber(feed_id, connection_id)
        return True

    def subscribe(self, connection_id: int, feed_ids: Iterable[Any]) -> list[int]:
        """Add each valid feed id; return the accepted ones in order.

        Invalid entries are skipped. Re-subscribing to a feed already in the
        set counts as accepted. Unknown connections are a no-op.
        """
        accepted: list[int] = []
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return accepted
            for feed_id in feed_ids:
                if not is_valid_feed_id(feed_id):
                    continue
                conn.subscribed_feeds.add(feed_id)
                self._by_feed.setdefault(feed_id, set()).add(connection_id)
                accepted.append(feed_id)
        return accepted

    def unsubscribe(self, connection_id: int, feed_ids: Iterable[Any]) -> list[int]:
        """Remove listed feed ids; return only those that were subscribed."""
        removed: list[int] = []
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return removed
            for feed_id in feed_ids:
                if not is_valid_feed_id(feed_id) or feed_id not in conn.subscribed_feeds:
                    continue
                conn.subscribed_feeds.discard(feed_id)
                self._discard_subscriber(feed_id, connection_id)
                removed.append(feed_id)
        return removed

    def subscribers_of(self, feed_id: int) -> list[Subscriber]:
        """Copy of the connections currently subscribed to feed_id."""
        with self._lock:
            ids = sorted(self._by_feed.get(feed_id, ()))
            return [
                Subscriber(connection_id=cid, channel=self._connections[cid].channel)
                for cid in ids
            ]

    def get(self, connection_id: int) -> Optional[Connection]:
        """Detached copy of a connection's state, or None."""
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return None
            return replace(conn, subscribed_feeds=set(conn.subscribed_feeds))

    def feeds_of(self, connection_id: int) -> frozenset[int]:
        with self._lock:
            conn = self._connections.get(connection_id)
            return frozenset(conn.subscribed_feeds) if conn else frozenset()

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def __len__(self) -> int:
        return self.connection_count()

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def _discard_subscriber(self, feed_id: int, connection_id: int) -> None:
        # Caller holds self._lock.
        members = self._by_feed.get(feed_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._by_feed[feed_id]


# ═══════════════════════════════════════════════════════════
# Feed state + broadcast dispatcher
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FeedState:
    feed_id: int
    value: Decimal
    updated_at: datetime


class FeedStateStore:
    """Latest known value per feed. In memory only; lost on restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[int, FeedState] = {}

    def set(self, feed_id: int, value: Decimal, at: datetime) -> FeedState:
        state = FeedState(feed_id=feed_id, value=value, updated_at=at)
        with self._lock:
            self._states[feed_id] = state
        return state

    def get(self, feed_id: int) -> Optional[FeedState]:
        with self._lock:
            return self._states.get(feed_id)

    def snapshot(self) -> dict[int, FeedState]:
        with self._lock:
            return dict(self._states)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


@dataclass
class DispatchStats:
    """Runtime counters for the health endpoint."""
    published: int = 0
    delivered: int = 0
    pruned: int = 0


class BroadcastDispatcher:
    """Pushes feed updates to every subscribed connection.

    Learn: Each publish produces exactly one frame per subscriber, with no
    batching, no coalescing. Deliveries run concurrently via asyncio.gather
    and are isolated from one another: a failed send prunes that one
    connection and the rest carry on.

    Publishers on other threads should hand publish() to the loop with
    asyncio.run_coroutine_threadsafe().
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        feeds: Optional[FeedStateStore] = None,
    ):
        self.registry = registry
        self.feeds = feeds if feeds is not None else FeedStateStore()
        self.stats = DispatchStats()

    async def publish(
        self,
        feed_id: int,
        value: Union[Decimal, int, float, str],
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Record a new value for feed_id and fan it out.

        Returns the number of connections the update was delivered to.
        """
        if not is_valid_feed_id(feed_id):
            raise ValueError(f"Feed id must be a positive integer, got {feed_id!r}")
        price = protocol.to_decimal(value)
        at = timestamp or _utcnow()

        self.feeds.set(feed_id, price, at)
        self.stats.published += 1

        data = protocol.encode(protocol.price_update(feed_id, price, at))
        subscribers = self.registry.subscribers_of(feed_id)
        if not subscribers:
            return 0

        results = await asyncio.gather(
            *(self.deliver(sub, data) for sub in subscribers)
        )
        delivered = sum(results)
        logger.debug(
            "feedrelay.published",
            feed_id=feed_id,
            price=protocol.format_price(price),
            subscribers=len(subscribers),
            delivered=delivered,
        )
        return delivered

    async def send_snapshot(self, connection_id: int, feed_id: int) -> bool:
        """Send the current value of feed_id to one connection.

        Returns False when the feed has no value yet, the connection is
        gone, or the send failed.
        """
        state = self.feeds.get(feed_id)
        if state is None:
            return False
        conn = self.registry.get(connection_id)
        if conn is None:
            return False
        data = protocol.encode(protocol.price_update(feed_id, state.value))
        return await self.deliver(
            Subscriber(connection_id=connection_id, channel=conn.channel), data,
        )

    async def deliver(self, subscriber: Subscriber, data: str) -> bool:
        """Send one frame; on failure, prune the connection from the registry."""
        channel = subscriber.channel
        try:
            ok = channel.is_open and await channel.send(data)
        except Exception as e:
            logger.warning(
                "feedrelay.delivery_failed",
                client_id=subscriber.connection_id,
                error=str(e),
            )
            ok = False
        else:
            if not ok:
                logger.warning(
                    "feedrelay.delivery_failed",
                    client_id=subscriber.connection_id,
                    error="channel closed",
                )

        if ok:
            self.stats.delivered += 1
            return True

        if self.registry.unregister(subscriber.connection_id):
            self.stats.pruned += 1
            await self._close(subscriber)
        return False

    async def _close(self, subscriber: Subscriber) -> None:
        # Wakes the transport's receive loop so the socket does not linger.
        try:
            await subscriber.channel.close()
        except Exception as e:
            logger.debug(
                "feedrelay.close_failed",
                client_id=subscriber.connection_id,
                error=str(e),
            )
