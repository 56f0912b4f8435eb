"""
GeoPresence - Client Presence Renderer

Reconciles the stream of presence events into per-identity map state:
one marker and one breadcrumb trail per connection id. A later event for
the same id moves the marker and extends the trail; a departure removes
both. The map itself is an external collaborator reached through the
MapView interface, so the reconciliation rules run the same against a
real map widget, a GeoJSON snapshot, or a test double.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..utils.config import MAP_DEFAULT_ZOOM, PEER_TRAIL_COLOR, SELF_TRAIL_COLOR
from ..utils.geo import format_distance_km, haversine_m, validate_coordinates
from ..utils.protocol import ChannelEvent, normalize_heading
from .positions import PositionFix

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]

LOCATING_MESSAGE = "Locating you..."


@dataclass
class Popup:
    """Popup content for one marker."""
    title: str
    distance_km: Optional[str] = None
    route_target: Optional[LatLng] = None

    @property
    def text(self) -> str:
        lines = [self.title]
        if self.distance_km is not None:
            lines.append(f"Distance: {self.distance_km} km")
        return "\n".join(lines)


class MapView(ABC):
    """Operations the renderer needs from a map widget.

    Handles returned by ``add_*`` are opaque to the renderer.
    """

    @abstractmethod
    def add_marker(self, key: str, coords: LatLng, color: str, heading: float,
                   is_self: bool) -> Any: ...

    @abstractmethod
    def move_marker(self, marker: Any, coords: LatLng) -> None: ...

    @abstractmethod
    def rotate_marker(self, marker: Any, heading: float) -> None: ...

    @abstractmethod
    def set_popup(self, marker: Any, popup: Popup) -> None: ...

    @abstractmethod
    def add_trail(self, key: str, color: str) -> Any: ...

    @abstractmethod
    def set_trail(self, trail: Any, points: List[LatLng]) -> None: ...

    @abstractmethod
    def remove_layer(self, layer: Any) -> None: ...

    @abstractmethod
    def set_view(self, coords: LatLng, zoom: int) -> None: ...

    def fly_to(self, coords: LatLng, zoom: int) -> None:
        self.set_view(coords, zoom)

    @abstractmethod
    def show_route(self, waypoints: List[LatLng]) -> Any: ...


@dataclass
class MarkerState:
    """Everything the client knows about one connection id."""
    id: str
    is_self: bool
    marker: Any
    trail: Any
    coords: LatLng
    heading: float = 0.0
    name: str = ""
    color: str = ""
    popup: Optional[Popup] = None
    trail_points: List[LatLng] = field(default_factory=list)


class PresenceRenderer:
    """Per-identity marker/trail reconciliation.

    Args:
        map_view: Map widget adapter.
        self_id: Callable returning the local connection id (it changes on
            every reconnect, so it is read per event).
        notify: Blocking user notification (e.g. an alert box).
        max_trail_points: Optional breadcrumb cap (at least 1); None keeps
            every point.
    """

    def __init__(self, map_view: MapView, self_id: Callable[[], Optional[str]],
                 notify: Optional[Callable[[str], None]] = None,
                 max_trail_points: Optional[int] = None) -> None:
        self._map = map_view
        self._self_id = self_id
        self._notify = notify or (lambda message: logger.warning("%s", message))
        if max_trail_points is not None and max_trail_points < 1:
            raise ValueError(f"max_trail_points must be at least 1, got {max_trail_points}")
        self._max_trail_points = max_trail_points
        self._markers: Dict[str, MarkerState] = {}
        self._self_coords: Optional[LatLng] = None
        self._has_centered = False
        self._route: Any = None

    @classmethod
    def attach(cls, channel, map_view: MapView, **kwargs) -> "PresenceRenderer":
        """Create a renderer wired to a PresenceChannel's events."""
        renderer = cls(map_view, lambda: channel.id, **kwargs)
        channel.on(ChannelEvent.RECEIVE_LOCATION, renderer.handle_presence)
        channel.on(ChannelEvent.USER_DISCONNECTED, renderer.handle_departure)
        return renderer

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def markers(self) -> Dict[str, MarkerState]:
        return dict(self._markers)

    def get(self, connection_id: str) -> Optional[MarkerState]:
        return self._markers.get(connection_id)

    @property
    def self_coords(self) -> Optional[LatLng]:
        return self._self_coords

    @property
    def has_centered(self) -> bool:
        return self._has_centered

    def update_self_position(self, fix: PositionFix) -> None:
        """Record the local device position (fed by the location producer)."""
        self._self_coords = (fix.latitude, fix.longitude)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def handle_presence(self, data: Any) -> Optional[MarkerState]:
        """Apply one receive-location event. Malformed events are ignored."""
        if not isinstance(data, dict) or not data.get("id"):
            logger.debug("Ignoring presence event without id: %r", data)
            return None
        coords = validate_coordinates(data.get("latitude"), data.get("longitude"))
        if coords is None:
            logger.debug("Ignoring presence event with bad coordinates: %r", data)
            return None

        connection_id = str(data["id"])
        is_self = connection_id == self._self_id()
        heading = normalize_heading(data.get("heading"))
        color = data.get("color") or ""
        name = data.get("name") or ""

        if is_self and not self._has_centered:
            self._map.set_view(coords, MAP_DEFAULT_ZOOM)
            self._has_centered = True

        state = self._markers.get(connection_id)
        if state is None:
            trail_color = SELF_TRAIL_COLOR if is_self else (color or PEER_TRAIL_COLOR)
            state = MarkerState(
                id=connection_id,
                is_self=is_self,
                marker=self._map.add_marker(connection_id, coords, color, heading, is_self),
                trail=self._map.add_trail(connection_id, trail_color),
                coords=coords,
            )
            self._markers[connection_id] = state
        else:
            self._map.move_marker(state.marker, coords)
            self._map.rotate_marker(state.marker, heading)

        state.coords = coords
        state.heading = heading
        state.name = name
        state.color = color
        self._append_trail_point(state, coords)

        state.popup = self._build_popup(state)
        self._map.set_popup(state.marker, state.popup)
        return state

    def handle_departure(self, connection_id: Any) -> bool:
        """Remove the marker and trail for a departed connection."""
        state = self._markers.pop(str(connection_id), None)
        if state is None:
            return False
        self._map.remove_layer(state.marker)
        self._map.remove_layer(state.trail)
        logger.debug("Removed presence for %s", connection_id)
        return True

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def request_route(self, dest_lat: float, dest_lng: float) -> Optional[List[LatLng]]:
        """Show a route from the local position to a destination.

        Notifies the user and returns None when the local position is not
        known yet. A new route replaces the previous one.
        """
        if self._self_coords is None:
            self._notify(LOCATING_MESSAGE)
            return None
        if self._route is not None:
            self._map.remove_layer(self._route)
            self._route = None
        waypoints = [self._self_coords, (dest_lat, dest_lng)]
        self._route = self._map.show_route(waypoints)
        return waypoints

    def route_to(self, connection_id: str) -> Optional[List[LatLng]]:
        """Route to another member's last known position."""
        state = self._markers.get(connection_id)
        if state is None or state.is_self:
            return None
        return self.request_route(*state.coords)

    def recenter(self) -> bool:
        """Fly back to the local position, if known."""
        if self._self_coords is None:
            return False
        self._map.fly_to(self._self_coords, MAP_DEFAULT_ZOOM)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append_trail_point(self, state: MarkerState, coords: LatLng) -> None:
        state.trail_points.append(coords)
        if self._max_trail_points is not None and len(state.trail_points) > self._max_trail_points:
            del state.trail_points[:-self._max_trail_points]
        self._map.set_trail(state.trail, list(state.trail_points))

    def _build_popup(self, state: MarkerState) -> Popup:
        if state.is_self:
            return Popup(title="Me")
        distance = None
        if self._self_coords is not None:
            meters = haversine_m(self._self_coords[0], self._self_coords[1],
                                 state.coords[0], state.coords[1])
            distance = format_distance_km(meters)
        return Popup(title=state.name, distance_km=distance, route_target=state.coords)
