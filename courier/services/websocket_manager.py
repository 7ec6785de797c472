"""Delivery fan-out over live WebSocket connections.

Every authenticated connection is a member of exactly one private channel,
keyed by its user id. Addressing a user means addressing that channel, so
the caller never needs to know how many tabs or devices are open.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi.websockets import WebSocket

logger = logging.getLogger(__name__)


def envelope(event_type: str, payload: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "type": event_type,
        "timestamp": datetime.now().isoformat(),
        "payload": payload,
    }
    if request_id is not None:
        message["request_id"] = request_id
    return message


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}  # connection_id -> websocket
        self.user_channels: Dict[str, Set[str]] = {}  # user_id -> connection_ids
        self.connection_users: Dict[str, str] = {}  # connection_id -> user_id

    def join(self, connection_id: str, user_id: str, websocket: WebSocket) -> None:
        self.active_connections[connection_id] = websocket
        self.connection_users[connection_id] = user_id
        self.user_channels.setdefault(user_id, set()).add(connection_id)

    def leave(self, connection_id: str) -> None:
        self.active_connections.pop(connection_id, None)
        user_id = self.connection_users.pop(connection_id, None)
        if user_id is None:
            return
        members = self.user_channels.get(user_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self.user_channels[user_id]

    def channel_members(self, user_id: str) -> List[str]:
        return sorted(self.user_channels.get(user_id, ()))

    async def _send(self, connection_id: str, message: dict) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except Exception as exc:
            # The receive loop of that connection will see the disconnect and clean up.
            logger.warning("Send failed connection_id=%s type=%s: %s", connection_id, message.get("type"), exc)
            return False

    async def _send_many(self, connection_ids: List[str], message: dict) -> int:
        if not connection_ids:
            return 0
        results = await asyncio.gather(*(self._send(cid, message) for cid in connection_ids))
        return sum(1 for delivered in results if delivered)

    async def send_to_connection(self, connection_id: str, message: dict) -> bool:
        return await self._send(connection_id, message)

    async def send_to_user(self, user_id: str, message: dict) -> int:
        """Deliver to every connection in the user's private channel."""
        return await self._send_many(self.channel_members(user_id), message)

    async def broadcast(self, message: dict) -> int:
        """Deliver to every live connection, regardless of user."""
        return await self._send_many(list(self.active_connections), message)

    async def _close(self, connection_id: str, websocket: WebSocket, code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as exc:
            logger.warning("Close failed connection_id=%s code=%s: %s", connection_id, code, exc)

    async def close_user(self, user_id: str, code: int, reason: str = "") -> int:
        """Close every connection in the user's channel; returns how many were open.

        Connections leave the registry first so nothing more is routed to them.
        Each receive loop then ends and runs its own presence cleanup.
        """
        sockets = {
            cid: self.active_connections[cid]
            for cid in self.channel_members(user_id)
            if cid in self.active_connections
        }
        for connection_id in sockets:
            self.leave(connection_id)
        if sockets:
            await asyncio.gather(*(self._close(cid, ws, code, reason) for cid, ws in sockets.items()))
        return len(sockets)

    def clear(self) -> None:
        self.active_connections.clear()
        self.user_channels.clear()
        self.connection_users.clear()


manager = ConnectionManager()
