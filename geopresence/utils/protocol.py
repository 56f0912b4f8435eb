"""Wire protocol for the presence transport channel.

Every frame is a JSON text message of the form::

    {"event": "<name>", "data": <payload>}

Client -> server events:
    join-room      room id (string)
    send-location  {latitude, longitude, heading, name, color, room?}
    ping           any
    get_stats      any

Server -> client events:
    connect            {"id": <connection id>} sent once on open
    receive-location   {id, latitude, longitude, heading, name, color}
    user-disconnected  departed connection id (string)
    pong / stats       diagnostics replies
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .geo import validate_coordinates

DEFAULT_NAME = "Anonymous"
DEFAULT_COLOR = "#3498db"


class ChannelEvent(str, Enum):
    """Named events carried over the transport channel."""
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CONNECT_ERROR = "connect_error"
    JOIN_ROOM = "join-room"
    SEND_LOCATION = "send-location"
    RECEIVE_LOCATION = "receive-location"
    USER_DISCONNECTED = "user-disconnected"
    PING = "ping"
    PONG = "pong"
    GET_STATS = "get_stats"
    STATS = "stats"


class ProtocolError(ValueError):
    """A frame could not be decoded into an event."""


class InvalidPayloadError(ValueError):
    """A send-location payload failed validation."""


def encode_frame(event: Any, data: Any = None) -> str:
    """Serialize an event and its payload into a text frame."""
    name = event.value if isinstance(event, ChannelEvent) else str(event)
    return json.dumps({"event": name, "data": data})


def decode_frame(raw: Any) -> Tuple[str, Any]:
    """Parse a text frame into ``(event_name, data)``.

    Raises ProtocolError for non-JSON text, non-object frames, or a
    missing/non-string event name.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not UTF-8: {e}") from e
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"frame is not JSON: {e}") from e
    if not isinstance(frame, dict):
        raise ProtocolError("frame is not a JSON object")
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("frame has no event name")
    return event, frame.get("data")


@dataclass
class LocationUpdate:
    """A validated send-location payload."""
    latitude: float
    longitude: float
    heading: float = 0.0
    name: str = DEFAULT_NAME
    color: str = DEFAULT_COLOR
    room: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "LocationUpdate":
        """Validate a raw payload, filling defaults for optional fields.

        Raises InvalidPayloadError when the payload is not an object or
        carries unusable coordinates.
        """
        if not isinstance(payload, dict):
            raise InvalidPayloadError("payload is not an object")
        coords = validate_coordinates(payload.get("latitude"), payload.get("longitude"))
        if coords is None:
            raise InvalidPayloadError(
                "invalid coordinates: latitude=%r longitude=%r"
                % (payload.get("latitude"), payload.get("longitude"))
            )
        return cls(
            latitude=coords[0],
            longitude=coords[1],
            heading=normalize_heading(payload.get("heading")),
            name=_coerce_str(payload.get("name"), DEFAULT_NAME),
            color=_coerce_str(payload.get("color"), DEFAULT_COLOR),
            room=_coerce_str(payload.get("room"), None),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "name": self.name,
            "color": self.color,
        }
        if self.room:
            payload["room"] = self.room
        return payload


def normalize_heading(value: Any) -> float:
    # Browsers report null heading when stationary
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        heading = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(heading) or math.isinf(heading):
        return 0.0
    return heading % 360.0


def _coerce_str(value: Any, default: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return default
