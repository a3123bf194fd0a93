import pytest

from route_keys import RouteKey, derive_route_keys
from route_segments import GEOD, NetworkRouteSegment, RouteWay

ORIGIN = (47.0, 11.0)  # lat, lon

HIKING_TAGS = {"route_hiking_1": "", "route_hiking_1_network": "lwn", "route_hiking_1_name": "Test Trail"}
BICYCLE_TAGS = {"route_bicycle_1": "", "route_bicycle_1_ref": "D4"}


def meters_to_latlon(east: float, north: float):
    """Point reached from ORIGIN by going ``north`` meters, then ``east`` meters."""
    lat0, lon0 = ORIGIN
    lon, lat, _ = GEOD.fwd(lon0, lat0, 0.0 if north >= 0 else 180.0, abs(north))
    lon, lat, _ = GEOD.fwd(lon, lat, 90.0 if east >= 0 else 270.0, abs(east))
    return lat, lon


@pytest.fixture
def hiking_key() -> RouteKey:
    return derive_route_keys(HIKING_TAGS)[0]


@pytest.fixture
def make_way():
    """make_way(id, [(east_m, north_m), ...], tags) -> RouteWay placed around ORIGIN."""

    def _make(way_id, points_m, tags=None):
        coords = [meters_to_latlon(e, n) for (e, n) in points_m]
        return RouteWay.from_latlon(way_id, coords, HIKING_TAGS if tags is None else tags)

    return _make


@pytest.fixture
def make_segment(make_way, hiking_key):
    """make_segment(id, points_m) -> whole-way forward segment under the hiking key."""

    def _make(way_id, points_m, route_key=None):
        way = make_way(way_id, points_m)
        return NetworkRouteSegment(way, route_key or hiking_key, 0, len(way) - 1)

    return _make
