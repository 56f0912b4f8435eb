"""
GeoPresence - Presence Broadcaster

Decides who hears about what. Given a location update from one
connection, the broadcaster builds the enriched presence event and the
set of connections it must be delivered to; on disconnect it builds the
departure notice. Actual socket I/O is left to the transport, so the
fan-out rules can be exercised without a network.

Two fan-out modes, chosen at construction time:

  room_scoped=True   deliver to the members of the target room (plus
                     the sender, which always receives its own echo)
  room_scoped=False  deliver to every open connection

Departure notices are always global, regardless of mode.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from .config import DEFAULT_ROOM
from .protocol import ChannelEvent, InvalidPayloadError, LocationUpdate
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    """One outbound event and the connections that should receive it."""
    event: ChannelEvent
    payload: Any
    recipients: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)


class PresenceBroadcaster:
    """Fan-out rules for presence updates and departures.

    Args:
        registry: Room registry shared with the transport.
        room_scoped: Restrict updates to room peers (True) or send them to
            every connection (False).
        validate_payloads: Reject malformed send-location payloads with
            InvalidPayloadError instead of relaying them unchanged.
        default_room: Room used when a join request names none.
    """

    def __init__(self, registry: RoomRegistry, room_scoped: bool = True,
                 validate_payloads: bool = True,
                 default_room: str = DEFAULT_ROOM) -> None:
        self._registry = registry
        self._room_scoped = room_scoped
        self._validate = validate_payloads
        self._default_room = default_room or DEFAULT_ROOM
        self._stats_lock = threading.Lock()
        self._updates_relayed = 0
        self._updates_rejected = 0
        self._departures = 0

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def room_scoped(self) -> bool:
        return self._room_scoped

    def handle_connect(self, connection_id: str) -> None:
        self._registry.connect(connection_id)

    def handle_join(self, connection_id: str, room_id: Any) -> Optional[str]:
        """Join *connection_id* to *room_id* (default room if blank).

        Returns the room actually joined, or None if the connection is gone.
        """
        room = room_id.strip() if isinstance(room_id, str) else ""
        if not room:
            room = self._default_room
        if not self._registry.join(connection_id, room):
            return None
        logger.debug("Connection %s joined room %r", connection_id, room)
        return room

    def handle_location(self, connection_id: str, payload: Any) -> Delivery:
        """Build the receive-location delivery for an incoming update.

        Raises InvalidPayloadError if validation is enabled and the payload
        is malformed, or if the payload is not an object at all.
        """
        try:
            data, requested_room = self._prepare_payload(payload)
        except InvalidPayloadError:
            with self._stats_lock:
                self._updates_rejected += 1
            raise

        event: Dict[str, Any] = {"id": connection_id}
        event.update(data)

        recipients = self._recipients_for(connection_id, requested_room)
        with self._stats_lock:
            self._updates_relayed += 1
        return Delivery(ChannelEvent.RECEIVE_LOCATION, event, frozenset(recipients))

    def handle_disconnect(self, connection_id: str) -> Delivery:
        """Drop the connection and notify everyone still connected."""
        self._registry.disconnect(connection_id)
        with self._stats_lock:
            self._departures += 1
        return Delivery(
            ChannelEvent.USER_DISCONNECTED,
            connection_id,
            frozenset(self._registry.connection_ids()),
        )

    def _prepare_payload(self, payload: Any):
        """Return (payload without room, requested room or None)."""
        if self._validate:
            update = LocationUpdate.from_payload(payload)
            data = update.to_payload()
            data.pop("room", None)
            return data, update.room
        if not isinstance(payload, dict):
            raise InvalidPayloadError("payload is not an object")
        data = dict(payload)
        room = data.pop("room", None)
        if not isinstance(room, str) or not room:
            room = None
        return data, room

    def _recipients_for(self, sender: str, requested_room: Optional[str]) -> set:
        if not self._room_scoped:
            recipients = self._registry.connection_ids()
        else:
            target_room = self._resolve_room(sender, requested_room)
            if target_room is None:
                recipients = set()
            else:
                recipients = self._registry.members_of(target_room)
        # The sender always gets its own echo while it is still open
        if self._registry.is_connected(sender):
            recipients.add(sender)
        return recipients

    def _resolve_room(self, sender: str, requested_room: Optional[str]) -> Optional[str]:
        """Room an update is delivered to: only ever the sender's own room."""
        registered = self._registry.room_of(sender)
        if requested_room and requested_room != registered:
            logger.debug("Connection %s addressed room %r but is in %r; "
                         "delivering to its own room", sender, requested_room, registered)
        return registered

    @property
    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "mode": "room" if self._room_scoped else "broadcast",
                "updates_relayed": self._updates_relayed,
                "updates_rejected": self._updates_rejected,
                "departures": self._departures,
            }
