"""
Real-time push over WebSockets.

Sockets join ``user:{id}`` on connect and ``note:{id}`` on demand. Emitting
is fire-and-forget: a dead socket is dropped and logged, never raised to the
request that triggered the push.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import Request, WebSocket

logger = logging.getLogger(__name__)


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def note_room(note_id: int) -> str:
    return f"note:{note_id}"


class NotificationHub:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    def join(self, room: str, websocket: WebSocket) -> None:
        self.rooms[room].add(websocket)

    def leave(self, room: str, websocket: WebSocket) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room]

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self.rooms):
            self.leave(room, websocket)

    async def emit(self, room: str, event: str, data: dict) -> int:
        """Send to every socket in the room; returns how many received it."""
        message = {
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = 0
        for websocket in list(self.rooms.get(room, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping socket in %s after failed send", room, exc_info=True)
                self.disconnect(websocket)
        return delivered

    async def notify_user(self, user_id: int, data: dict) -> int:
        return await self.emit(user_room(user_id), "notification", data)

    async def note_updated(self, note_id: int, data: dict) -> int:
        return await self.emit(note_room(note_id), "note-updated", data)


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.notifications
