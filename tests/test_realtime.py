import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

from app.config import Settings
from app.utils.notifications import OperationsWebhook
from app.utils.realtime import OPERATIONS_ROOM, ConnectionManager, parents_room, safe_publish


class StubWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.accepted = False
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))


class RecordingWebhook:
    def __init__(self):
        self.relayed = []

    async def relay(self, event, data):
        self.relayed.append((event, data))
        return True


async def test_publish_reaches_room_members_only():
    manager = ConnectionManager()
    parent, admin = StubWebSocket(), StubWebSocket()
    await manager.connect(parent, "parent-1")
    await manager.connect(admin, "admin-1")
    manager.join("parent-1", parents_room("B1"))
    manager.join("admin-1", OPERATIONS_ROOM)

    delivered = await manager.publish(parents_room("B1"), "bus_location", {"bus_id": "B1"})

    assert delivered == 1
    assert parent.accepted is True
    assert parent.sent == [{"type": "bus_location", "room": "parents_bus_B1", "data": {"bus_id": "B1"}}]
    assert admin.sent == []


async def test_failing_socket_is_dropped():
    manager = ConnectionManager()
    await manager.connect(StubWebSocket(fail=True), "broken")
    manager.join("broken", OPERATIONS_ROOM)

    delivered = await manager.publish(OPERATIONS_ROOM, "bus_location", {})

    assert delivered == 0
    assert "broken" not in manager.active_connections
    assert OPERATIONS_ROOM not in manager.rooms


async def test_disconnect_leaves_rooms():
    manager = ConnectionManager()
    await manager.connect(StubWebSocket(), "s1")
    manager.join("s1", "school_school-1")

    manager.disconnect("s1")

    assert manager.rooms == {}


async def test_subscribe_and_unsubscribe_messages():
    manager = ConnectionManager()
    await manager.connect(StubWebSocket(), "s1")

    reply = await manager.handle_message("s1", json.dumps({"action": "subscribe", "room": "school_school-1"}))
    assert reply == {"type": "subscribed", "room": "school_school-1"}
    assert "s1" in manager.rooms["school_school-1"]

    reply = await manager.handle_message("s1", json.dumps({"action": "unsubscribe", "room": "school_school-1"}))
    assert reply["type"] == "unsubscribed"
    assert "school_school-1" not in manager.rooms


async def test_other_messages_are_heartbeats():
    manager = ConnectionManager()
    assert (await manager.handle_message("s1", "ping"))["type"] == "heartbeat"
    assert (await manager.handle_message("s1", "[1, 2]"))["type"] == "heartbeat"


async def test_operations_events_are_relayed():
    webhook = RecordingWebhook()
    manager = ConnectionManager(webhook=webhook)

    await manager.publish(OPERATIONS_ROOM, "speed_violation", {"bus_id": "B1"})
    await manager.publish("school_school-1", "speed_violation", {"bus_id": "B1"})
    await manager.drain_relays()

    assert webhook.relayed == [("speed_violation", {"bus_id": "B1"})]


async def test_safe_publish_swallows_errors():
    class Exploding:
        async def publish(self, room, event, data):
            raise RuntimeError("boom")

    await safe_publish(Exploding(), OPERATIONS_ROOM, "bus_location", {})
    await safe_publish(None, OPERATIONS_ROOM, "bus_location", {})


def test_webhook_disabled_without_url():
    assert OperationsWebhook.from_settings(Settings(OPS_WEBHOOK_URL="")) is None


def test_webhook_from_settings():
    webhook = OperationsWebhook.from_settings(
        Settings(OPS_WEBHOOK_URL="https://ops.example.com/hooks", OPS_WEBHOOK_TOKEN="secret")
    )
    assert webhook.url == "https://ops.example.com/hooks"
    assert webhook._headers()["Authorization"] == "Bearer secret"


def test_webhook_headers_without_token():
    assert "Authorization" not in OperationsWebhook("https://ops.example.com/hooks")._headers()


async def test_webhook_skips_unsubscribed_events():
    webhook = OperationsWebhook("https://ops.example.com/hooks")
    assert await webhook.relay("bus_location", {"bus_id": "B1"}) is False


async def test_relay_does_not_block_publish():
    release = asyncio.Event()

    class SlowWebhook:
        def __init__(self):
            self.finished = False

        async def relay(self, event, data):
            await release.wait()
            self.finished = True
            return True

    webhook = SlowWebhook()
    manager = ConnectionManager(webhook=webhook)

    await manager.publish(OPERATIONS_ROOM, "geofence_alert", {"bus_id": "B1"})
    assert webhook.finished is False
    assert len(manager.relay_tasks) == 1

    release.set()
    await manager.drain_relays()
    assert webhook.finished is True
    assert manager.relay_tasks == set()


@pytest.fixture
async def ops_server():
    received = []

    async def accept(request):
        received.append({"headers": dict(request.headers), "body": await request.json()})
        return web.json_response({"ok": True})

    async def reject(request):
        return web.json_response({"error": "unavailable"}, status=503)

    async def stall(request):
        await asyncio.sleep(0.5)
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_post("/hooks", accept)
    app.router.add_post("/down", reject)
    app.router.add_post("/slow", stall)

    server = test_utils.TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


async def test_relay_posts_event(ops_server):
    webhook = OperationsWebhook(str(ops_server.make_url("/hooks")), token="secret")

    assert await webhook.relay("speed_violation", {"bus_id": "B1", "current_speed": 82}) is True

    request = ops_server.received[0]
    assert request["headers"]["Authorization"] == "Bearer secret"
    assert request["body"]["event"] == "speed_violation"
    assert request["body"]["data"] == {"bus_id": "B1", "current_speed": 82}
    assert "sent_at" in request["body"]


async def test_relay_error_status(ops_server):
    webhook = OperationsWebhook(str(ops_server.make_url("/down")))
    assert await webhook.relay("geofence_alert", {"bus_id": "B1"}) is False


async def test_relay_timeout(ops_server):
    webhook = OperationsWebhook(str(ops_server.make_url("/slow")), timeout_seconds=0.05)
    assert await webhook.relay("geofence_alert", {"bus_id": "B1"}) is False


async def test_relay_connection_error():
    app = web.Application()
    server = test_utils.TestServer(app)
    await server.start_server()
    url = str(server.make_url("/hooks"))
    await server.close()

    webhook = OperationsWebhook(url)
    assert await webhook.relay("speed_violation", {"bus_id": "B1"}) is False
