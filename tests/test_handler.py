"""RelaySession tests — client requests end to end, without a socket."""

import json
from decimal import Decimal

import pytest

from feedrelay.realtime.handler import RelaySession


@pytest.fixture()
def connect(registry, dispatcher, channel_factory):
    """Open a session on a fresh FakeChannel; returns (session, channel)."""

    async def _connect(**channel_kwargs):
        channel = channel_factory(**channel_kwargs)
        session = RelaySession(registry, dispatcher, channel, "Connected to feed relay")
        await session.on_connect()
        channel.frames.clear()
        return session, channel

    return _connect


def _frame(message: dict) -> str:
    return json.dumps(message)


@pytest.mark.asyncio
async def test_connect_greets_client(registry, dispatcher, channel_factory):
    channel = channel_factory()
    session = RelaySession(registry, dispatcher, channel, "hello")
    client_id = await session.on_connect()

    assert client_id in registry
    assert channel.frames == [{"type": "connected", "clientId": client_id, "message": "hello"}]


@pytest.mark.asyncio
async def test_subscribe_without_state_only_acks(connect, registry):
    session, channel = await connect()
    await session.on_message(_frame({
        "type": "subscribe",
        "subscriptionId": "sub-1",
        "subscriptions": [{"feedId": 6}, {"feedId": "x"}, {"feedId": 7}],
    }))

    assert channel.frames == [{
        "type": "subscribed", "subscriptionId": "sub-1", "subscribedFeeds": [6, 7],
    }]
    assert registry.feeds_of(session.client_id) == {6, 7}


@pytest.mark.asyncio
async def test_subscribe_sends_snapshot_before_ack(connect, dispatcher):
    await dispatcher.publish(6, Decimal("200.00"))
    session, channel = await connect()

    await session.on_message(_frame({
        "type": "subscribe", "subscriptions": [{"feedId": 6}, {"feedId": 8}],
    }))

    assert [f["type"] for f in channel.frames] == ["priceUpdate", "subscribed"]
    assert channel.frames[0]["updates"] == [{"feedId": 6, "price": "200.00"}]
    assert channel.frames[1] == {
        "type": "subscribed", "subscriptionId": None, "subscribedFeeds": [6, 8],
    }


@pytest.mark.asyncio
async def test_subscribed_connection_gets_publishes(connect, dispatcher):
    session, channel = await connect()
    await session.on_message(_frame({"type": "subscribe", "subscriptions": [{"feedId": 6}]}))
    channel.frames.clear()

    await dispatcher.publish(6, Decimal("200.00"))
    assert len(channel.frames) == 1
    assert channel.frames[0]["type"] == "priceUpdate"
    assert channel.frames[0]["updates"] == [{"feedId": 6, "price": "200.00"}]


@pytest.mark.asyncio
async def test_subscribe_with_non_list_is_a_single_error(connect, registry):
    session, channel = await connect()
    await session.on_message(_frame({"type": "subscribe", "subscriptions": {"feedId": 6}}))

    assert channel.frames == [{"type": "error", "message": "Invalid subscription format"}]
    assert registry.feeds_of(session.client_id) == frozenset()
    assert session.client_id in registry


@pytest.mark.asyncio
async def test_unsubscribe_reports_only_removed(connect):
    session, channel = await connect()
    await session.on_message(_frame({"type": "subscribe", "subscriptions": [{"feedId": 6}]}))
    channel.frames.clear()

    await session.on_message(_frame({"type": "unsubscribe", "feedIds": [6, 99]}))
    assert channel.frames == [{"type": "unsubscribed", "unsubscribedFeeds": [6]}]


@pytest.mark.asyncio
async def test_unsubscribe_with_missing_field(connect):
    session, channel = await connect()
    await session.on_message(_frame({"type": "unsubscribe"}))
    assert channel.frames == [{"type": "error", "message": "Invalid unsubscription format"}]


@pytest.mark.asyncio
async def test_ping(connect):
    session, channel = await connect()
    await session.on_message(_frame({"type": "ping"}))
    assert channel.frames[0]["type"] == "pong"
    assert channel.frames[0]["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_unknown_and_missing_type(connect):
    session, channel = await connect()
    await session.on_message(_frame({"type": "teleport"}))
    await session.on_message(_frame({"feedIds": [6]}))
    assert channel.frames == [
        {"type": "error", "message": "Unknown message type: teleport"},
        {"type": "error", "message": "Unknown message type: None"},
    ]


@pytest.mark.asyncio
async def test_invalid_json_keeps_connection_open(connect, registry):
    session, channel = await connect()
    await session.on_message("{oops")
    assert channel.frames == [{"type": "error", "message": "Invalid JSON format"}]
    assert session.client_id in registry


@pytest.mark.asyncio
async def test_deeply_nested_json_keeps_connection_open(connect, registry):
    session, channel = await connect()
    await session.on_message("[" * 200000)
    assert channel.frames == [{"type": "error", "message": "Invalid JSON format"}]
    assert session.client_id in registry


@pytest.mark.asyncio
async def test_infinity_subscription_id_is_rejected(connect, registry):
    session, channel = await connect()
    await session.on_message(
        '{"type": "subscribe", "subscriptionId": Infinity, "subscriptions": [{"feedId": 6}]}'
    )
    assert channel.frames == [{"type": "error", "message": "Invalid JSON format"}]
    assert registry.feeds_of(session.client_id) == frozenset()
    assert session.client_id in registry


@pytest.mark.asyncio
async def test_bytes_frames_are_accepted(connect):
    session, channel = await connect()
    await session.on_message(b'{"type": "ping"}')
    assert channel.frames[0]["type"] == "pong"


@pytest.mark.asyncio
async def test_close_is_idempotent_and_silences_session(connect, registry):
    session, channel = await connect()
    await session.on_close(1000, "bye")
    await session.on_close(1000, "bye")
    await session.on_error(RuntimeError("late"))
    assert session.client_id not in registry

    await session.on_message(_frame({"type": "ping"}))
    assert channel.frames == []


@pytest.mark.asyncio
async def test_error_unregisters(connect, registry):
    session, _ = await connect()
    await session.on_error(ConnectionResetError("reset"))
    assert session.client_id not in registry


@pytest.mark.asyncio
async def test_failed_reply_prunes_connection(connect, registry):
    session, channel = await connect()
    channel.fail = True
    await session.on_message(_frame({"type": "ping"}))
    assert session.client_id not in registry
    assert channel.closed
