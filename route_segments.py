# route_segments.py
"""
Map coordinates, tile ids and the directed segment view over a stored way.

Geometry is kept in 31-bit integer Web Mercator coordinates (x31, y31), the
world being a 2^31 x 2^31 square. Integer coordinates let identical endpoints
of neighbouring ways compare (and hash) exactly.

A NetworkRouteSegment never copies points: it is a (way, start, end) window,
with start > end meaning the way is walked backwards.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

from pyproj import Geod

from route_keys import RouteKey

# --------------------------- Config ---------------------------

GEOD = Geod(ellps="WGS84")

WORLD_BITS = 31
WORLD_SIZE = 1 << WORLD_BITS
MAX_LAT = 85.05112878

# Zoom of the tiles walked by the frontier loader
TILE_ZOOM = 15

LatLon = Tuple[float, float]  # (lat, lon)
Point31 = Tuple[int, int]     # (x31, y31)


# ------------------------ Tile math (31-bit) ------------------

def get_31_x(lon: float) -> int:
    lon = max(min(lon, 180.0), -180.0)
    x = int((lon + 180.0) / 360.0 * WORLD_SIZE)
    return min(x, WORLD_SIZE - 1)


def get_31_y(lat: float) -> int:
    lat = max(min(lat, MAX_LAT), -MAX_LAT)
    rad = math.radians(lat)
    y = int((1.0 - math.log(math.tan(rad) + 1 / math.cos(rad)) / math.pi) / 2.0 * WORLD_SIZE)
    return max(0, min(y, WORLD_SIZE - 1))


def get_31_lon(x: int) -> float:
    return x / WORLD_SIZE * 360.0 - 180.0


def get_31_lat(y: int) -> float:
    n = math.pi - 2.0 * math.pi * y / WORLD_SIZE
    return math.degrees(math.atan(math.sinh(n)))


def latlon_to_31(lat: float, lon: float) -> Point31:
    return get_31_x(lon), get_31_y(lat)


def point31_to_latlon(x: int, y: int) -> LatLon:
    return get_31_lat(y), get_31_lon(x)


def convert_point_to_key(x: int, y: int) -> int:
    """Pack a 31-bit point into a single int usable as an index key."""
    return (x << WORLD_BITS) + y


def get_x_from_key(key: int) -> int:
    return key >> WORLD_BITS


def get_y_from_key(key: int) -> int:
    return key & (WORLD_SIZE - 1)


def get_tile_id(x: int, y: int, zoom: int = TILE_ZOOM) -> Optional[int]:
    """Tile containing a 31-bit point, or None outside the world square."""
    if not (0 <= x < WORLD_SIZE and 0 <= y < WORLD_SIZE):
        return None
    shift = WORLD_BITS - zoom
    return ((x >> shift) << zoom) + (y >> shift)


def get_x31_from_tile_id(tile_id: int, dx: int = 0, zoom: int = TILE_ZOOM) -> int:
    return ((tile_id >> zoom) + dx) << (WORLD_BITS - zoom)


def get_y31_from_tile_id(tile_id: int, dy: int = 0, zoom: int = TILE_ZOOM) -> int:
    return ((tile_id & ((1 << zoom) - 1)) + dy) << (WORLD_BITS - zoom)


def tile_bounds(tile_id: int, zoom: int = TILE_ZOOM) -> Tuple[int, int, int, int]:
    """Inclusive (left, top, right, bottom) 31-bit bounds of a tile."""
    left = get_x31_from_tile_id(tile_id, 0, zoom)
    top = get_y31_from_tile_id(tile_id, 0, zoom)
    right = get_x31_from_tile_id(tile_id, 1, zoom)
    bottom = get_y31_from_tile_id(tile_id, 1, zoom)
    return left, top, right - 1, bottom - 1


# ------------------------ Distances ---------------------------

def geodesic_meters(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Return WGS84 geodesic distance in meters between lon/lat points."""
    _, _, d = GEOD.inv(a[0], a[1], b[0], b[1])
    return float(d)


def distance_latlon(a: LatLon, b: LatLon) -> float:
    _, _, d = GEOD.inv(a[1], a[0], b[1], b[0])
    return float(d)


def square_root_dist31(x1: int, y1: int, x2: int, y2: int) -> float:
    """Distance in meters between two 31-bit points."""
    if x1 == x2 and y1 == y2:
        return 0.0
    return geodesic_meters((get_31_lon(x1), get_31_lat(y1)), (get_31_lon(x2), get_31_lat(y2)))


def meters_to_31(lat: float, meters: float) -> int:
    """Rough size of ``meters`` in 31-bit units at a latitude (for bbox padding)."""
    per_unit = 40_075_016.686 * max(1e-6, math.cos(math.radians(lat))) / WORLD_SIZE
    return int(math.ceil(meters / per_unit))


# ------------------------ Stored ways -------------------------

@dataclass(eq=False)
class RouteWay:
    """One stored way: id, 31-bit geometry and raw tags."""

    id: Hashable
    xs: Sequence[int]
    ys: Sequence[int]
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_latlon(cls, way_id: Hashable, coords: Sequence[LatLon], tags: Optional[Dict[str, str]] = None) -> "RouteWay":
        xs = [get_31_x(lon) for (_lat, lon) in coords]
        ys = [get_31_y(lat) for (lat, _lon) in coords]
        return cls(id=way_id, xs=xs, ys=ys, tags=dict(tags or {}))

    def __len__(self) -> int:
        return len(self.xs)

    def __repr__(self) -> str:
        return "RouteWay(id=%r, points=%d)" % (self.id, len(self.xs))


@dataclass(frozen=True)
class NetworkRouteSegment:
    way: RouteWay
    route_key: RouteKey
    start: int
    end: int

    @property
    def id(self) -> Hashable:
        return self.way.id

    @property
    def points_length(self) -> int:
        return len(self.way.xs)

    @property
    def is_reversed(self) -> bool:
        return self.start > self.end

    def point31(self, i: int) -> Point31:
        return self.way.xs[i], self.way.ys[i]

    @property
    def start_point(self) -> Point31:
        return self.point31(self.start)

    @property
    def end_point(self) -> Point31:
        return self.point31(self.end)

    def indices(self) -> Iterator[int]:
        """Way point indices in traversal order, both ends included."""
        step = 1 if self.start <= self.end else -1
        return iter(range(self.start, self.end + step, step))

    def inverse(self) -> "NetworkRouteSegment":
        return replace(self, start=self.end, end=self.start)

    def sliced(self, start: int, end: int) -> "NetworkRouteSegment":
        return replace(self, start=start, end=end)

    def latlon_points(self) -> List[LatLon]:
        return [point31_to_latlon(*self.point31(i)) for i in self.indices()]

    def __repr__(self) -> str:
        return "Segment(way=%r, %d->%d, %s)" % (self.way.id, self.start, self.end, self.route_key)


__all__ = [
    "TILE_ZOOM",
    "LatLon",
    "Point31",
    "get_31_x",
    "get_31_y",
    "get_31_lon",
    "get_31_lat",
    "latlon_to_31",
    "point31_to_latlon",
    "convert_point_to_key",
    "get_x_from_key",
    "get_y_from_key",
    "get_tile_id",
    "get_x31_from_tile_id",
    "get_y31_from_tile_id",
    "tile_bounds",
    "geodesic_meters",
    "distance_latlon",
    "square_root_dist31",
    "meters_to_31",
    "RouteWay",
    "NetworkRouteSegment",
]
