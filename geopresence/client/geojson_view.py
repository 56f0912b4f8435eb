"""
GeoPresence - GeoJSON Map View

MapView implementation that keeps the rendered layers as GeoJSON, for
headless clients: markers become Point features, breadcrumb trails and
routes become LineString features. ``snapshot()`` returns a
FeatureCollection that any GeoJSON-aware map can display.

Routing is delegated to a ``router`` callable (the external directions
engine). Without one, a route is the straight segment between waypoints.
"""

import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .renderer import LatLng, MapView, Popup

logger = logging.getLogger(__name__)

Router = Callable[[List[LatLng]], List[LatLng]]


def _lonlat(coords: LatLng) -> List[float]:
    # GeoJSON orders positions as [lon, lat]
    return [coords[1], coords[0]]


class _Layer:
    __slots__ = ("layer_id", "kind", "key", "properties", "points")

    def __init__(self, layer_id: int, kind: str, key: str,
                 properties: Dict[str, Any], points: List[LatLng]):
        self.layer_id = layer_id
        self.kind = kind
        self.key = key
        self.properties = properties
        self.points = points

    def to_feature(self) -> Dict[str, Any]:
        if self.kind == "marker":
            geometry = {"type": "Point", "coordinates": _lonlat(self.points[0])}
        else:
            geometry = {
                "type": "LineString",
                "coordinates": [_lonlat(p) for p in self.points],
            }
        properties = {"id": self.key, "layer": self.kind}
        properties.update(self.properties)
        return {"type": "Feature", "geometry": geometry, "properties": properties}


class GeoJsonMapView(MapView):
    """In-memory map whose layers can be exported as GeoJSON."""

    def __init__(self, router: Optional[Router] = None) -> None:
        self._router = router
        self._layers: Dict[int, _Layer] = {}
        self._ids = itertools.count(1)
        self.center: Optional[LatLng] = None
        self.zoom: Optional[int] = None

    def _add(self, kind: str, key: str, properties: Dict[str, Any],
             points: List[LatLng]) -> int:
        layer_id = next(self._ids)
        self._layers[layer_id] = _Layer(layer_id, kind, key, properties, points)
        return layer_id

    def add_marker(self, key: str, coords: LatLng, color: str, heading: float,
                   is_self: bool) -> int:
        return self._add("marker", key, {
            "color": color,
            "heading": heading,
            "is_self": is_self,
        }, [coords])

    def move_marker(self, marker: int, coords: LatLng) -> None:
        self._layers[marker].points = [coords]

    def rotate_marker(self, marker: int, heading: float) -> None:
        self._layers[marker].properties["heading"] = heading

    def set_popup(self, marker: int, popup: Popup) -> None:
        props = self._layers[marker].properties
        props["popup"] = popup.text
        props["name"] = popup.title

    def add_trail(self, key: str, color: str) -> int:
        return self._add("trail", key, {"color": color}, [])

    def set_trail(self, trail: int, points: List[LatLng]) -> None:
        self._layers[trail].points = list(points)

    def remove_layer(self, layer: Any) -> None:
        self._layers.pop(layer, None)

    def set_view(self, coords: LatLng, zoom: int) -> None:
        self.center = coords
        self.zoom = zoom

    def show_route(self, waypoints: List[LatLng]) -> int:
        path = list(waypoints)
        if self._router is not None:
            try:
                path = self._router(list(waypoints))
            except Exception as e:
                logger.error("Routing failed, falling back to straight line: %s", e)
                path = list(waypoints)
        return self._add("route", "route", {"waypoints": len(waypoints)}, path)

    @property
    def layer_count(self) -> int:
        return len(self._layers)

    def layers_of(self, kind: str) -> List[Tuple[str, List[LatLng]]]:
        return [(l.key, list(l.points)) for l in self._layers.values() if l.kind == kind]

    def snapshot(self) -> Dict[str, Any]:
        """All layers as a GeoJSON FeatureCollection."""
        features = [
            layer.to_feature() for layer in self._layers.values()
            if layer.points
        ]
        return {
            "type": "FeatureCollection",
            "features": features,
            "properties": {
                "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "center": list(self.center) if self.center else None,
                "zoom": self.zoom,
                "feature_count": len(features),
            },
        }
