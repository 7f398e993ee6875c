"""WebSocket endpoint — the transport layer in front of the relay.

Learn: Each client connects to ws://host:port/ (or /ws). The handler:
1. Accepts the socket and wraps it in a WebSocketChannel
2. Reports the connection to a RelaySession (register + greeting)
3. Feeds every inbound frame to the session
4. Reports close or error so the registry drops the connection

The registry and dispatcher are per-app objects on app.state, built in
main.create_app(); nothing here is a module-level singleton.
"""

import asyncio

import structlog
from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketState

from feedrelay.realtime.handler import RelaySession

logger = structlog.get_logger()
router = APIRouter()


class WebSocketChannel:
    """Outbound side of one WebSocket.

    Learn: Starlette does not allow concurrent send_text() calls on one
    socket, and broadcasts, snapshots and replies can all target the same
    client at once. The asyncio.Lock serialises them. It is FIFO, so
    frames go out in the order they were requested.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send(self, data: str) -> bool:
        async with self._send_lock:
            if not self.is_open:
                return False
            await self.websocket.send_text(data)
        return True

    async def close(self, code: int = 1011) -> None:
        """Server-side close, used after the dispatcher prunes this client.

        Sending the close frame makes the peer answer with its own, so the
        endpoint's pending receive() returns a disconnect.
        """
        async with self._send_lock:
            was_open = self.is_open
            self._closed = True
            if was_open:
                await self.websocket.close(code=code)


@router.websocket("/")
@router.websocket("/ws")
async def relay_websocket(websocket: WebSocket):
    """Price feed WebSocket endpoint.

    Learn: Frames may arrive as text or bytes; both are decoded as JSON.
    The loop ends on disconnect or socket error. When the dispatcher
    prunes this connection after a failed send it also closes the
    channel, so receive() wakes with the peer's disconnect.
    """
    registry = websocket.app.state.registry
    dispatcher = websocket.app.state.dispatcher
    connect_message = websocket.app.state.settings.connect_message

    await websocket.accept()
    channel = WebSocketChannel(websocket)
    session = RelaySession(registry, dispatcher, channel, connect_message)

    client_id = await session.on_connect()
    structlog.contextvars.bind_contextvars(client_id=client_id)
    if websocket.client:
        logger.info("feedrelay.client_address", host=websocket.client.host)

    try:
        while client_id in registry:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                channel.mark_closed()
                await session.on_close(message.get("code"), message.get("reason") or "")
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await session.on_message(raw)
    except Exception as e:
        channel.mark_closed()
        await session.on_error(e)
    finally:
        # Covers cancellation too.
        channel.mark_closed()
        await session.on_close()
        structlog.contextvars.unbind_contextvars("client_id")
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close()
