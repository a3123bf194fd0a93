# segment_store.py
"""
Route segment stores.

A store answers three spatial questions about ways carrying route tags:

* which segments touch a point (exact vertex match),
* which segments pass within a radius of a point,
* which segments intersect a tile bounding box, grouped by RouteKey.

`SegmentStore` implements the three queries on top of a single primitive,
`ways_in_bbox`, so a backend only has to find candidate ways. Two backends
exist: `GeoJSONSegmentStore` below (whole file in memory, shapely STRtree)
and `MBTilesSegmentStore` in `mbtiles_backend.py`.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Dict, Hashable, Iterable, List, Optional, Sequence

from shapely.geometry import LineString, Point, box
from shapely.strtree import STRtree

from route_keys import RouteKey, RouteKeyFilter
from route_segments import (
    NetworkRouteSegment,
    RouteWay,
    get_31_lat,
    meters_to_31,
    square_root_dist31,
)

logger = logging.getLogger("routes.store")

KEY_CACHE_SIZE = 65536  # ways whose derived route keys are remembered


class SegmentStoreError(IOError):
    """The underlying store could not be read."""


class SegmentStore:
    """Query surface used by the route selector."""

    def __init__(self, key_filter: Optional[RouteKeyFilter] = None):
        self.key_filter = key_filter or RouteKeyFilter()
        self.route_keys = lru_cache(maxsize=KEY_CACHE_SIZE)(self._convert_keys)

    # ---------------- Backend primitive -----------------
    def ways_in_bbox(self, left: int, top: int, right: int, bottom: int) -> List[RouteWay]:
        """Ways whose geometry intersects the inclusive 31-bit bbox."""
        raise NotImplementedError

    # ---------------- Queries ---------------------------
    def _convert_keys(self, way: RouteWay) -> List[RouteKey]:
        """Route keys of a way; cached per way as ``route_keys``."""
        return self.key_filter.convert(way.tags)

    def segments_touching_point(self, x: int, y: int) -> List[NetworkRouteSegment]:
        """Segments leaving every way vertex equal to (x, y), in both directions."""
        res: List[NetworkRouteSegment] = []
        for way in self.ways_in_bbox(x, y, x, y):
            keys = self.route_keys(way)
            if not keys:
                continue
            for i in range(len(way)):
                if way.xs[i] == x and way.ys[i] == y:
                    res.extend(_segments_from(way, keys, i))
        return res

    def segments_near_point(self, x: int, y: int, radius: float) -> List[NetworkRouteSegment]:
        """Like `segments_touching_point` but from the closest vertex within ``radius`` meters."""
        pad = meters_to_31(get_31_lat(y), radius)
        res: List[NetworkRouteSegment] = []
        for way in self.ways_in_bbox(x - pad, y - pad, x + pad, y + pad):
            keys = self.route_keys(way)
            if not keys:
                continue
            best_ind = -1
            best_dist = radius
            for i in range(len(way)):
                d = square_root_dist31(x, y, way.xs[i], way.ys[i])
                if d < best_dist:
                    best_ind, best_dist = i, d
            if best_ind >= 0:
                res.extend(_segments_from(way, keys, best_ind))
        return res

    def segments_in_tile(
        self,
        left: int,
        top: int,
        right: int,
        bottom: int,
        route_key: Optional[RouteKey] = None,
    ) -> Dict[RouteKey, List[NetworkRouteSegment]]:
        """Whole-way segments intersecting the bbox, grouped by route key."""
        res: Dict[RouteKey, List[NetworkRouteSegment]] = {}
        for way in self.ways_in_bbox(left, top, right, bottom):
            for rk in self.route_keys(way):
                if route_key is not None and rk != route_key:
                    continue
                res.setdefault(rk, []).append(NetworkRouteSegment(way, rk, 0, len(way) - 1))
        return res


def _segments_from(way: RouteWay, keys: Sequence[RouteKey], i: int) -> List[NetworkRouteSegment]:
    out = []
    last = len(way) - 1
    for rk in keys:
        if i < last:
            out.append(NetworkRouteSegment(way, rk, i, last))
        if i > 0:
            out.append(NetworkRouteSegment(way, rk, i, 0))
    return out


# ------------------------ In-memory store ---------------------

class GeoJSONSegmentStore(SegmentStore):
    """All ways in memory, indexed by a shapely STRtree in 31-bit space."""

    def __init__(self, ways: Iterable[RouteWay], key_filter: Optional[RouteKeyFilter] = None):
        super().__init__(key_filter)
        self.ways: List[RouteWay] = [w for w in ways if len(w) >= 2]
        self._geoms = [LineString(list(zip(w.xs, w.ys))) for w in self.ways]
        self._tree = STRtree(self._geoms) if self._geoms else None

    @classmethod
    def from_features(cls, features: Iterable[dict], key_filter: Optional[RouteKeyFilter] = None) -> "GeoJSONSegmentStore":
        ways: List[RouteWay] = []
        for feat_idx, feat in enumerate(features):
            geom = feat.get("geometry") or {}
            gtype = geom.get("type")
            coords = geom.get("coordinates") or []
            if gtype not in {"LineString", "MultiLineString"} or not coords:
                continue
            props = feat.get("properties") or {}
            tags = props.get("tags") if isinstance(props.get("tags"), dict) else props
            raw_id = feat.get("id", props.get("id", props.get("osm_id", feat_idx)))
            parts = [coords] if gtype == "LineString" else coords
            for part_idx, part in enumerate(parts):
                if len(part) < 2:
                    continue
                way_id: Hashable = raw_id if gtype == "LineString" else (raw_id, part_idx)
                ways.append(RouteWay.from_latlon(way_id, [(lat, lon) for (lon, lat, *_rest) in part], tags))
        return cls(ways, key_filter)

    @classmethod
    def from_file(cls, path: str, key_filter: Optional[RouteKeyFilter] = None) -> "GeoJSONSegmentStore":
        """Load a GeoJSON FeatureCollection of route ways (lon/lat LineStrings)."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise SegmentStoreError("Cannot read GeoJSON store %s: %s" % (path, e)) from e
        store = cls.from_features(data.get("features", []), key_filter)
        logger.info("Loaded GeoJSON store: %s (ways=%d)", path, len(store.ways))
        return store

    def ways_in_bbox(self, left: int, top: int, right: int, bottom: int) -> List[RouteWay]:
        if self._tree is None:
            return []
        if left == right and top == bottom:
            query = Point(left, top)
        else:
            query = box(left, top, right, bottom)
        hits = self._tree.query(query, predicate="intersects")
        return [self.ways[i] for i in sorted(int(h) for h in hits)]


__all__ = [
    "SegmentStoreError",
    "SegmentStore",
    "GeoJSONSegmentStore",
]
