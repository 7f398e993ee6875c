"""Relay session — transport events in, registry/dispatcher calls out.

Learn: The WebSocket endpoint knows nothing about feeds; it only reports
what happened on the socket:

    on_connect → on_message* → (on_close | on_error)

RelaySession turns each event into registry mutations and protocol
replies. Replies go through the dispatcher's delivery path, so a reply
that cannot be sent prunes the connection the same way a failed
broadcast does.
"""

from typing import Any, Optional, Union

import structlog

from feedrelay.realtime import protocol
from feedrelay.realtime.fanout import (
    BroadcastDispatcher,
    Channel,
    Subscriber,
    SubscriptionRegistry,
)

logger = structlog.get_logger()


class RelaySession:
    """One client connection's view of the relay."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        dispatcher: BroadcastDispatcher,
        channel: Channel,
        connect_message: str,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.channel = channel
        self.connect_message = connect_message
        self.client_id: Optional[int] = None

    async def on_connect(self) -> int:
        """Register the connection and greet the client."""
        self.client_id = self.registry.register(self.channel)
        logger.info("feedrelay.client_connected", client_id=self.client_id)
        await self._reply(protocol.connected(self.client_id, self.connect_message))
        return self.client_id

    async def on_message(self, raw: Union[str, bytes]) -> None:
        """Handle one inbound frame. Never raises for bad client input."""
        if self.client_id is None or self.client_id not in self.registry:
            return

        try:
            message = protocol.decode(raw)
            message_type = message.get("type")
            if message_type == protocol.SUBSCRIBE:
                await self._handle_subscribe(message)
            elif message_type == protocol.UNSUBSCRIBE:
                await self._handle_unsubscribe(message)
            elif message_type == protocol.PING:
                await self._reply(protocol.pong())
            else:
                await self._reply(protocol.unknown_type(message_type))
        except protocol.RequestFormatError as e:
            logger.info(
                "feedrelay.bad_request", client_id=self.client_id, error=e.message,
            )
            await self._reply(protocol.error(e.message))

    async def on_close(self, code: Optional[int] = None, reason: str = "") -> None:
        if self.client_id is None:
            return
        if self.registry.unregister(self.client_id):
            logger.info(
                "feedrelay.client_disconnected",
                client_id=self.client_id,
                code=code,
                reason=reason,
            )

    async def on_error(self, error: BaseException) -> None:
        if self.client_id is None:
            return
        if self.registry.unregister(self.client_id):
            logger.warning(
                "feedrelay.client_error", client_id=self.client_id, error=str(error),
            )

    # ─── Requests ─────────────────────────────────────────

    async def _handle_subscribe(self, message: dict[str, Any]) -> None:
        request = protocol.parse_subscribe(message)
        accepted = self.registry.subscribe(
            self.client_id, protocol.requested_feed_ids(request.subscriptions),
        )

        # Snapshot pushes go out before the ack.
        for feed_id in accepted:
            await self.dispatcher.send_snapshot(self.client_id, feed_id)

        await self._reply(protocol.subscribed(request.subscription_id, accepted))
        logger.info(
            "feedrelay.client_subscribed", client_id=self.client_id, feeds=accepted,
        )

    async def _handle_unsubscribe(self, message: dict[str, Any]) -> None:
        request = protocol.parse_unsubscribe(message)
        removed = self.registry.unsubscribe(self.client_id, request.feed_ids)
        await self._reply(protocol.unsubscribed(removed))
        logger.info(
            "feedrelay.client_unsubscribed", client_id=self.client_id, feeds=removed,
        )

    async def _reply(self, message: dict[str, Any]) -> bool:
        return await self.dispatcher.deliver(
            Subscriber(connection_id=self.client_id, channel=self.channel),
            protocol.encode(message),
        )
