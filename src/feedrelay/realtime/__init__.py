"""Real-time core — subscription registry, fan-out, WebSocket transport.

Learn: Updates flow one way:
1. Data source → BroadcastDispatcher.publish(feed_id, value)
2. Dispatcher → SubscriptionRegistry.subscribers_of(feed_id)
3. Dispatcher → each subscriber's channel (WebSocket send)

Client requests flow the other way, through RelaySession, and only ever
touch the registry.
"""

from feedrelay.realtime.fanout import (
    BroadcastDispatcher,
    FeedState,
    FeedStateStore,
    SubscriptionRegistry,
)

__all__ = [
    "BroadcastDispatcher",
    "FeedState",
    "FeedStateStore",
    "SubscriptionRegistry",
]
