"""Authoritative in-process view of who is online.

State is ``user_id -> set of connection ids``; a user is online while the set
is non-empty. Only the edges (first connection, last disconnection) write the
persisted flag and broadcast, so extra tabs never cause flapping.

All mutation happens on the event loop. Each user has its own lock so the
persisted write and broadcast for one edge finish before the next edge for
that same user starts; different users never wait on each other.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Set

from starlette.concurrency import run_in_threadpool

from courier.services.activity_log import log_presence
from courier.services.websocket_manager import ConnectionManager, envelope, manager

logger = logging.getLogger(__name__)

STATUS_EVENT = "user:status"

PresenceWriter = Callable[[str, bool, datetime], None]


class PresenceTracker:
    def __init__(self, manager: ConnectionManager):
        self._manager = manager
        self._connections: Dict[str, Set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}  # holders plus waiters per lock

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize edges for one user; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.get(user_id, 1) - 1
            if remaining:
                self._lock_users[user_id] = remaining
            else:
                self._lock_users.pop(user_id, None)
                self._locks.pop(user_id, None)

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    def online_user_ids(self) -> Set[str]:
        return {user_id for user_id, connections in self._connections.items() if connections}

    async def connect(self, user_id: str, connection_id: str, persist: PresenceWriter) -> bool:
        """Register a connection; returns True when the user just came online."""
        async with self._user_lock(user_id):
            connections = self._connections.setdefault(user_id, set())
            came_online = not connections
            connections.add(connection_id)
            if came_online:
                await self._transition(user_id, True, persist)
            return came_online

    async def disconnect(self, user_id: str, connection_id: str, persist: PresenceWriter) -> bool:
        """Drop a connection; returns True when the user just went offline."""
        async with self._user_lock(user_id):
            connections = self._connections.get(user_id)
            if not connections or connection_id not in connections:
                return False
            connections.discard(connection_id)
            if connections:
                return False
            del self._connections[user_id]
            await self._transition(user_id, False, persist)
            return True

    async def _transition(self, user_id: str, is_online: bool, persist: PresenceWriter) -> None:
        last_seen = datetime.now()
        try:
            await run_in_threadpool(persist, user_id, is_online, last_seen)
        except Exception:
            # The in-memory view stays authoritative; the stored flag catches up on the next edge.
            logger.exception("Failed to persist presence user_id=%s is_online=%s", user_id, is_online)
        log_presence(user_id, is_online)
        await self._manager.broadcast(
            envelope(
                STATUS_EVENT,
                {"user_id": user_id, "is_online": is_online, "last_seen": last_seen.isoformat()},
            )
        )

    def clear(self) -> None:
        self._connections.clear()
        self._locks.clear()
        self._lock_users.clear()


presence = PresenceTracker(manager)
