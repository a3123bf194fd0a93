# route_tracks.py
"""Turn an ordered list of route segments into track geometry (lat, lon polylines)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from route_keys import RouteKey
from route_segments import LatLon, NetworkRouteSegment, distance_latlon, point31_to_latlon

CONNECT_POINTS_DISTANCE = 100.0  # meters; larger gaps start a new track piece
MIN_POINT_DISTANCE = 1.0         # meters; closer boundary points are merged


@dataclass
class RouteTrack:
    route_key: Optional[RouteKey]
    segments: List[List[LatLon]] = field(default_factory=list)

    @property
    def point_count(self) -> int:
        return sum(len(s) for s in self.segments)

    def to_geojson(self) -> Dict[str, Any]:
        """GeoJSON Feature (MultiLineString, lon/lat order)."""
        props: Dict[str, Any] = {"segments": len(self.segments), "points": self.point_count}
        if self.route_key is not None:
            props.update(self.route_key.as_dict())
        return {
            "type": "Feature",
            "geometry": {
                "type": "MultiLineString",
                "coordinates": [[[lon, lat] for (lat, lon) in seg] for seg in self.segments],
            },
            "properties": props,
        }


def emit_track(
    segments: Sequence[NetworkRouteSegment],
    route_key: Optional[RouteKey] = None,
    connect_distance: float = CONNECT_POINTS_DISTANCE,
    min_point_distance: float = MIN_POINT_DISTANCE,
) -> RouteTrack:
    """Walk every segment in its traversal direction, splitting pieces at large gaps.

    The first point of a segment is dropped when it is within ``min_point_distance``
    of the previous point; when it is farther than ``connect_distance`` the current
    piece is closed and a new one started.
    """
    track = RouteTrack(route_key=route_key)
    current: List[LatLon] = []
    for segment in segments:
        for n, i in enumerate(segment.indices()):
            point = point31_to_latlon(*segment.point31(i))
            if n == 0 and current:
                dst = distance_latlon(current[-1], point)
                if dst <= min_point_distance:
                    continue
                if dst > connect_distance:
                    track.segments.append(current)
                    current = []
            current.append(point)
    if current:
        track.segments.append(current)
    return track


__all__ = [
    "RouteTrack",
    "emit_track",
]
