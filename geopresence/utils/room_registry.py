"""
GeoPresence - Room Registry

Tracks which open connections exist and which room each one belongs to.
A connection is a member of at most one room at a time: joining a new
room replaces the previous membership (last join wins). Rooms are never
created or deleted explicitly; a room exists while at least one open
connection has joined it.

Membership is stored per connection rather than in a room table, so a
lookup can never return an identifier whose connection has closed.

Thread-safe: the channel event loop mutates the registry while the HTTP
status handler reads it from another thread.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class _ConnectionEntry:
    """Registry bookkeeping for one open connection."""

    __slots__ = ("connection_id", "room", "connected_at", "joined_at")

    def __init__(self, connection_id: str, timestamp: float):
        self.connection_id = connection_id
        self.room: Optional[str] = None
        self.connected_at = timestamp
        self.joined_at: Optional[float] = None


class RoomRegistry:
    """Process-wide room membership for open connections.

    Usage:
        registry = RoomRegistry()
        registry.connect("c1")
        registry.join("c1", "r1")
        registry.members_of("r1")    # {"c1"}
        registry.disconnect("c1")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, _ConnectionEntry] = {}
        self._total_connections = 0
        self._total_joins = 0

    def connect(self, connection_id: str) -> None:
        """Register a newly opened connection (no room yet)."""
        with self._lock:
            if connection_id in self._connections:
                return
            self._connections[connection_id] = _ConnectionEntry(
                connection_id, time.time(),
            )
            self._total_connections += 1

    def disconnect(self, connection_id: str) -> Optional[str]:
        """Forget a connection. Returns the room it was in, if any."""
        with self._lock:
            entry = self._connections.pop(connection_id, None)
        if entry is None:
            return None
        return entry.room

    def join(self, connection_id: str, room_id: str) -> bool:
        """Make *connection_id* a member of *room_id*, leaving any prior room.

        Returns False if the connection is not open.
        """
        with self._lock:
            entry = self._connections.get(connection_id)
            if entry is None:
                return False
            previous = entry.room
            entry.room = room_id
            entry.joined_at = time.time()
            self._total_joins += 1
        if previous and previous != room_id:
            logger.debug("Connection %s moved from room %r to %r",
                         connection_id, previous, room_id)
        return True

    def room_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            entry = self._connections.get(connection_id)
            return entry.room if entry else None

    def members_of(self, room_id: str) -> Set[str]:
        """Open connections currently in *room_id* (empty for unknown rooms)."""
        with self._lock:
            return {
                cid for cid, entry in self._connections.items()
                if entry.room == room_id
            }

    def connection_ids(self) -> Set[str]:
        with self._lock:
            return set(self._connections)

    def is_connected(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._connections

    def rooms(self) -> Dict[str, int]:
        """Non-empty rooms mapped to their member counts."""
        counts: Dict[str, int] = {}
        with self._lock:
            for entry in self._connections.values():
                if entry.room is not None:
                    counts[entry.room] = counts.get(entry.room, 0) + 1
        return counts

    def list_connections(self) -> List[Dict[str, Any]]:
        """Snapshot of every open connection, oldest first."""
        with self._lock:
            entries = sorted(self._connections.values(),
                             key=lambda e: e.connected_at)
            return [
                {
                    "id": e.connection_id,
                    "room": e.room,
                    "connected_at": e.connected_at,
                    "joined_at": e.joined_at,
                }
                for e in entries
            ]

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def stats(self) -> Dict[str, Any]:
        rooms = self.rooms()
        with self._lock:
            return {
                "open_connections": len(self._connections),
                "rooms": len(rooms),
                "total_connections": self._total_connections,
                "total_joins": self._total_joins,
            }
