"""WebSocket endpoint tests — real ASGI round trips via Starlette's TestClient.

Learn: Entering `TestClient(app)` as a context manager runs the lifespan
and gives us `client.portal`, which runs coroutines on the same event
loop as the WebSocket handler. That is how tests call
dispatcher.publish() while a socket is open.
"""

from decimal import Decimal

import pytest
from starlette.testclient import TestClient

from feedrelay.config import Settings
from feedrelay.main import create_app


@pytest.fixture()
def ws_client(app):
    with TestClient(app) as client:
        yield client


def _publish(client: TestClient, feed_id: int, price: str) -> int:
    dispatcher = client.app.state.dispatcher
    return client.portal.call(dispatcher.publish, feed_id, Decimal(price))


def test_connect_sends_greeting(ws_client):
    with ws_client.websocket_connect("/") as ws:
        greeting = ws.receive_json()
        assert greeting["type"] == "connected"
        assert greeting["clientId"] == 1
        assert greeting["message"] == "Connected to feed relay"


def test_ws_alias_path(ws_client):
    with ws_client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["type"] == "connected"


def test_subscribe_then_publish(ws_client):
    with ws_client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "subscriptionId": 7, "subscriptions": [{"feedId": 6}]})
        assert ws.receive_json() == {
            "type": "subscribed", "subscriptionId": 7, "subscribedFeeds": [6],
        }

        assert _publish(ws_client, 6, "200.00") == 1
        update = ws.receive_json()
        assert update["type"] == "priceUpdate"
        assert update["updates"] == [{"feedId": 6, "price": "200.00"}]


def test_late_subscriber_gets_snapshot(ws_client):
    _publish(ws_client, 6, "199.95")
    with ws_client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}]})
        snapshot = ws.receive_json()
        ack = ws.receive_json()

    assert snapshot["type"] == "priceUpdate"
    assert snapshot["updates"] == [{"feedId": 6, "price": "199.95"}]
    assert ack["subscribedFeeds"] == [6]


def test_unsubscribe_and_errors(ws_client):
    with ws_client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}]})
        ws.receive_json()

        ws.send_json({"type": "unsubscribe", "feedIds": [6, 99]})
        assert ws.receive_json() == {"type": "unsubscribed", "unsubscribedFeeds": [6]}

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid JSON format"}

        ws.send_json({"type": "subscribe", "subscriptions": "6"})
        assert ws.receive_json() == {"type": "error", "message": "Invalid subscription format"}

        ws.send_bytes(b'{"type": "ping"}')
        assert ws.receive_json()["type"] == "pong"


def test_disconnect_unregisters(ws_client):
    registry = ws_client.app.state.registry
    with ws_client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}]})
        ws.receive_json()
        assert registry.connection_count() == 1

    assert registry.connection_count() == 0
    assert registry.subscribers_of(6) == []
    assert _publish(ws_client, 6, "200.00") == 0


def test_two_clients_fan_out(ws_client):
    with ws_client.websocket_connect("/") as a, ws_client.websocket_connect("/") as b:
        ids = {a.receive_json()["clientId"], b.receive_json()["clientId"]}
        assert ids == {1, 2}
        a.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}]})
        a.receive_json()
        b.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}, {"feedId": 7}]})
        b.receive_json()

        assert _publish(ws_client, 6, "201.00") == 2
        assert a.receive_json()["updates"][0]["price"] == "201.00"
        assert b.receive_json()["updates"][0]["price"] == "201.00"

        assert _publish(ws_client, 7, "1.5") == 1
        assert b.receive_json()["updates"] == [{"feedId": 7, "price": "1.5"}]


def test_simulator_publishes_into_relay():
    app = create_app(Settings(
        simulator_enabled=True,
        simulator_interval_seconds=0.01,
        log_level="WARNING",
    ))
    with TestClient(app) as client, client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "subscriptions": [{"feedId": 6}]})

        updates = []
        while len(updates) < 3:
            frame = ws.receive_json()
            if frame["type"] == "priceUpdate":
                updates.append(frame)

    for frame in updates:
        assert frame["updates"][0]["feedId"] == 6
        price = Decimal(frame["updates"][0]["price"])
        assert Decimal("197.89") <= price <= Decimal("201.67")
