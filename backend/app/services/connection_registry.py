import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

SAFETY_ROOM = "admin:safety"


def booking_room(booking_id: str) -> str:
    return f"booking:{booking_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class ConnectionRegistry:
    """Live WebSocket connections grouped into named rooms.

    Connections only need ``send_json`` and ``close`` coroutines. Callers that
    must keep delivery in the same order as a write hold :meth:`room_lock`
    across the write and the :meth:`broadcast`.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Any]] = {}
        self._memberships: Dict[Any, Set[str]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}

    def room_lock(self, room: str) -> asyncio.Lock:
        lock = self._room_locks.get(room)
        if lock is None:
            lock = self._room_locks[room] = asyncio.Lock()
        return lock

    async def join(self, room: str, connection: Any) -> None:
        self._rooms.setdefault(room, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(room)

    async def leave(self, room: str, connection: Any) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._rooms[room]
                lock = self._room_locks.get(room)
                if lock is not None and not lock.locked():
                    del self._room_locks[room]
        rooms = self._memberships.get(connection)
        if rooms is not None:
            rooms.discard(room)

    async def disconnect(self, connection: Any) -> None:
        for room in list(self._memberships.get(connection, ())):
            await self.leave(room, connection)
        self._memberships.pop(connection, None)

    def is_member(self, room: str, connection: Any) -> bool:
        return connection in self._rooms.get(room, ())

    def members(self, room: str) -> List[Any]:
        return list(self._rooms.get(room, ()))

    def rooms_of(self, connection: Any) -> Set[str]:
        return set(self._memberships.get(connection, ()))

    async def broadcast(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Any] = None,
    ) -> int:
        frame = {"event": event, "data": data}
        delivered = 0
        dead = []
        for connection in self.members(room):
            if connection is exclude:
                continue
            try:
                await connection.send_json(frame)
                delivered += 1
            except Exception:
                logger.info("Dropping dead connection from %s", room)
                dead.append(connection)
        for connection in dead:
            await self.disconnect(connection)
        return delivered

    async def broadcast_many(self, rooms: Iterable[str], event: str, data: Dict[str, Any]) -> int:
        return sum([await self.broadcast(room, event, data) for room in rooms])

    async def close_all(self, code: int = 1001) -> None:
        for connection in list(self._memberships):
            try:
                await connection.close(code=code)
            except Exception:
                logger.debug("Connection already closed during shutdown")
        self._rooms.clear()
        self._memberships.clear()
        self._room_locks.clear()
