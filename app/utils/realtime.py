import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from app.utils.notifications import OperationsWebhook

logger = logging.getLogger(__name__)

OPERATIONS_ROOM = "admin_dashboard"


def parents_room(bus_id: str) -> str:
    return f"parents_bus_{bus_id}"


def school_room(school_id: str) -> str:
    return f"school_{school_id}"


def driver_room(driver_id: str) -> str:
    return f"driver_{driver_id}"


async def safe_publish(publisher, room: str, event: str, data: Dict[str, Any]) -> None:
    """Publish without letting a channel failure reach the caller"""
    if publisher is None:
        return
    try:
        await publisher.publish(room, event, data)
    except Exception as e:
        logger.warning(f"Publish of {event} to {room} failed (non-critical): {e}")


# WebSocket connection manager with named rooms
class ConnectionManager:
    def __init__(self, webhook: Optional[OperationsWebhook] = None):
        self.active_connections: Dict[str, WebSocket] = {}
        self.rooms: Dict[str, Set[str]] = defaultdict(set)
        self.webhook = webhook
        # In-flight webhook relays, kept referenced until they finish
        self.relay_tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, session_id: str):
        await websocket.accept()
        self.active_connections[session_id] = websocket
        logger.info(f"WebSocket connected: {session_id}")

    def disconnect(self, session_id: str):
        if session_id in self.active_connections:
            del self.active_connections[session_id]
            logger.info(f"WebSocket disconnected: {session_id}")

        for room in list(self.rooms):
            self.rooms[room].discard(session_id)
            if not self.rooms[room]:
                del self.rooms[room]

    def join(self, session_id: str, room: str):
        self.rooms[room].add(session_id)

    def leave(self, session_id: str, room: str):
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self.rooms[room]

    async def publish(self, room: str, event: str, data: Dict[str, Any]) -> int:
        """
        Push an event to every session in a room.
        Delivery failures drop the session and are never raised.
        Returns the number of sessions reached.
        """
        message = json.dumps(
            {"type": event, "room": room, "data": data},
            default=str
        )

        delivered = 0
        disconnected = []
        for session_id in list(self.rooms.get(room, ())):
            websocket = self.active_connections.get(session_id)
            if websocket is None:
                disconnected.append(session_id)
                continue
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Error publishing {event} to {session_id}: {e}")
                disconnected.append(session_id)

        # Clean up disconnected clients
        for session_id in disconnected:
            self.disconnect(session_id)

        if room == OPERATIONS_ROOM and self.webhook is not None:
            task = asyncio.create_task(self.webhook.relay(event, data))
            self.relay_tasks.add(task)
            task.add_done_callback(self.relay_tasks.discard)

        return delivered

    async def drain_relays(self) -> None:
        """Wait for pending webhook relays, used on shutdown"""
        if self.relay_tasks:
            await asyncio.gather(*list(self.relay_tasks), return_exceptions=True)

    async def handle_message(self, session_id: str, raw: str) -> Dict[str, Any]:
        """Handle a client frame: room subscriptions, anything else is a heartbeat"""
        try:
            message = json.loads(raw)
        except ValueError:
            message = {}

        action = message.get("action") if isinstance(message, dict) else None
        room = message.get("room") if isinstance(message, dict) else None

        if action == "subscribe" and room:
            self.join(session_id, room)
            return {"type": "subscribed", "room": room}

        if action == "unsubscribe" and room:
            self.leave(session_id, room)
            return {"type": "unsubscribed", "room": room}

        return {
            "type": "heartbeat",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
