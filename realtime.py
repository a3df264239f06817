"""
Realtime fan-out over WebSockets.

Connections join rooms by sending signals; the board service emits events to
rooms and never learns who is listening. Two kinds of room exist:

    <projectId>      everyone currently viewing a project
    user:<userId>    one user's sessions, for membership changes

Client -> server messages:  {"event": "join", "data": {"projectId": ...}}
                            {"event": "leave", "data": {"projectId": ...}}
                            {"event": "join-user", "data": {"userId": ...}}
                            {"event": "leave-user", "data": {"userId": ...}}
Server -> client messages:  {"event": <name>, "data": <payload>}

Emission is best-effort: a failed delivery is logged and dropped, and never
reaches the request that triggered it.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


def project_room(project_id: Any) -> str:
    return str(project_id)


def user_room(user_id: Any) -> str:
    return f"user:{user_id}"


class Connection:
    """One connected client and the rooms it has joined."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid4().hex
        self.websocket = websocket
        self.rooms: Set[str] = set()

    async def send(self, event: str, data: Payload) -> None:
        await self.websocket.send_json({"event": event, "data": data})


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, Set[Connection]] = {}

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        connection = Connection(websocket)
        logger.info("[realtime] client connected %s", connection.id)
        return connection

    def join(self, connection: Connection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(connection)
        connection.rooms.add(room)
        logger.info("[realtime] %s joined room %s", connection.id, room)

    def leave(self, connection: Connection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)
        logger.info("[realtime] %s left room %s", connection.id, room)

    def disconnect(self, connection: Connection) -> None:
        for room in list(connection.rooms):
            self.leave(connection, room)
        logger.info("[realtime] client disconnected %s", connection.id)

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room, ()))

    async def broadcast(self, room: str, event: str, payload: Payload) -> int:
        """Send to every connection in ``room``; returns how many sends succeeded."""
        delivered = 0
        for connection in list(self.rooms.get(room, ())):
            try:
                await connection.send(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning("[realtime] send %s to %s failed: %s", event, connection.id, e)
                self.disconnect(connection)
        return delivered

    async def handle_message(self, connection: Connection, raw: str) -> None:
        """Apply one client signal. Malformed or unknown signals are ignored."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("[realtime] ignoring non-JSON message from %s", connection.id)
            return
        if not isinstance(message, dict):
            return
        event = message.get("event")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            return

        if event == "join" and data.get("projectId"):
            room = project_room(data["projectId"])
            self.join(connection, room)
            await connection.send("socket:joined", {"projectId": room})
        elif event == "leave" and data.get("projectId"):
            self.leave(connection, project_room(data["projectId"]))
        elif event == "join-user" and data.get("userId"):
            self.join(connection, user_room(data["userId"]))
            await connection.send("socket:joined-user", {"userId": str(data["userId"])})
        elif event == "leave-user" and data.get("userId"):
            self.leave(connection, user_room(data["userId"]))
        else:
            logger.debug("[realtime] unhandled signal %r from %s", event, connection.id)


class Broadcaster(Protocol):
    def emit(self, room: str, event: str, payload: Payload) -> None:
        ...


class NullBroadcaster:
    """Drops every event."""

    def emit(self, room: str, event: str, payload: Payload) -> None:
        return None


class RecordingBroadcaster:
    """Keeps emitted events in memory; handy for tests and debugging."""

    def __init__(self):
        self.events: List[Tuple[str, str, Payload]] = []

    def emit(self, room: str, event: str, payload: Payload) -> None:
        self.events.append((room, event, payload))

    def for_room(self, room: str) -> List[Tuple[str, Payload]]:
        return [(event, payload) for r, event, payload in self.events if r == room]

    def names(self) -> List[str]:
        return [event for _, event, _ in self.events]


class RoomBroadcaster:
    """Delivers events through a ConnectionManager without waiting for the sends."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop to hand deliveries to when emit() is called off the event loop thread."""
        self.loop = loop

    def emit(self, room: str, event: str, payload: Payload) -> None:
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None

            if running is not None:
                task = running.create_task(self._deliver(room, event, payload))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            elif self.loop is not None and self.loop.is_running():
                asyncio.run_coroutine_threadsafe(self._deliver(room, event, payload), self.loop)
            else:
                logger.warning("[realtime] no event loop, dropped %s for room %s", event, room)
        except Exception:
            logger.exception("[realtime] could not schedule %s for room %s", event, room)

    async def _deliver(self, room: str, event: str, payload: Payload) -> None:
        try:
            await self.manager.broadcast(room, event, payload)
        except Exception:
            logger.exception("[realtime] delivery of %s to room %s failed", event, room)
