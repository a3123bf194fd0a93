# mbtiles_backend.py
"""
Route segment store over an MBTiles file of Mapbox Vector Tiles.

Every line feature carrying route tags (`route_hiking_1`, `route_bicycle_2_ref`,
...) in its properties becomes a way. Features are clipped by the tiles, so each
tile part is its own way with id (layer, osm_id, tile_x, tile_y, part); the route
selector stitches the parts back together like any other fragmented route.

Usage:
    from mbtiles_backend import MBTilesSegmentStore
    from route_selector import NetworkRouteSelector

    store = MBTilesSegmentStore("./routes.mbtiles", zoom=14)
    tracks = NetworkRouteSelector(store).get_routes_latlon(47.98, 11.28)
"""

from __future__ import annotations

import gzip
import logging
import sqlite3
import zlib
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from mapbox_vector_tile import decode as mvt_decode
from shapely.geometry import LineString, box

from route_keys import RouteKeyFilter
from route_segments import WORLD_BITS, RouteWay
from segment_store import SegmentStore, SegmentStoreError

# --------------------------- Config ---------------------------

DEFAULT_ZOOM = 14
DEFAULT_EXTENT = 4096
# decoded tiles kept per store
TILE_CACHE_SIZE = 256

logger = logging.getLogger("routes.mbtiles")

TileKey = Tuple[int, int, int]  # (z, x, y), XYZ scheme


# ------------------------ Utility helpers ---------------------

def _maybe_decompress(buf: bytes) -> bytes:
    if len(buf) >= 2 and buf[:2] == b"\x1f\x8b":  # gzip
        return gzip.decompress(buf)
    try:
        return zlib.decompress(buf)
    except zlib.error:
        return buf


def tile_point_to_31(z: int, x: int, y: int, px: float, py: float, extent: int) -> Tuple[int, int]:
    """Tile-local pixel (y down) to 31-bit world coordinates."""
    shift = WORLD_BITS - z
    x31 = int(round((x + px / extent) * (1 << shift)))
    y31 = int(round((y + py / extent) * (1 << shift)))
    return x31, y31


def _feature_id(f: dict, props: dict):
    for value in (f.get("id"), props.get("osm_id"), props.get("id")):
        if value is not None:
            return value
    return None


def tiles_for_bbox31(left: int, top: int, right: int, bottom: int, z: int) -> List[TileKey]:
    shift = WORLD_BITS - z
    last = (1 << z) - 1
    xs = range(max(0, left >> shift), min(last, right >> shift) + 1)
    ys = range(max(0, top >> shift), min(last, bottom >> shift) + 1)
    return [(z, x, y) for x in xs for y in ys]


# ---------------------- MBTiles I/O & decode ------------------

@lru_cache(maxsize=4)
def _open_mbtiles(path: str) -> sqlite3.Connection:
    uri = f"file:{path}?mode=ro"
    try:
        conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA query_only = ON;")
        row = conn.execute("SELECT COUNT(1) AS c FROM tiles").fetchone()
    except sqlite3.Error as e:
        raise SegmentStoreError("Cannot open MBTiles %s: %s" % (path, e)) from e
    logger.info("Opened MBTiles: %s (tiles=%s)", path, row["c"] if row else "?")
    return conn


def _fetch_mvt(conn: sqlite3.Connection, z: int, x: int, y: int) -> Optional[bytes]:
    # MBTiles uses TMS (y flipped)
    tms_y = (2 ** z - 1) - y
    try:
        row = conn.execute(
            "SELECT tile_data FROM tiles WHERE zoom_level=? AND tile_column=? AND tile_row=?",
            (z, x, tms_y),
        ).fetchone()
    except sqlite3.Error as e:
        raise SegmentStoreError("Cannot read tile %d/%d/%d: %s" % (z, x, y, e)) from e
    return row["tile_data"] if row else None


def mbtiles_stats(path: str) -> Dict[str, Optional[str]]:
    """Return basic MBTiles stats for debugging."""
    conn = _open_mbtiles(path)
    out: Dict[str, Optional[str]] = {}
    try:
        row = conn.execute("SELECT COUNT(1) AS c, MIN(zoom_level) AS zmin, MAX(zoom_level) AS zmax FROM tiles").fetchone()
        out["tile_count"] = int(row["c"]) if row and row["c"] is not None else 0
        out["min_zoom"] = int(row["zmin"]) if row and row["zmin"] is not None else None
        out["max_zoom"] = int(row["zmax"]) if row and row["zmax"] is not None else None
    except sqlite3.Error as e:
        logger.warning("mbtiles_stats: failed tiles query: %s", e)
    try:
        meta = {r["name"]: r["value"] for r in conn.execute("SELECT name, value FROM metadata").fetchall()}
    except sqlite3.Error:
        meta = {}
    for k in ["name", "version", "description", "attribution", "bounds"]:
        out[k] = meta.get(k)
    logger.debug("mbtiles_stats(%s): %s", path, out)
    return out


class MBTilesSegmentStore(SegmentStore):
    """Reads route ways out of vector tiles at a single zoom level."""

    def __init__(
        self,
        path: str,
        zoom: int = DEFAULT_ZOOM,
        key_filter: Optional[RouteKeyFilter] = None,
        tile_cache_size: int = TILE_CACHE_SIZE,
    ):
        super().__init__(key_filter)
        self.path = path
        self.zoom = zoom
        self._conn = _open_mbtiles(path)
        self._tile_ways = lru_cache(maxsize=tile_cache_size)(self._decode_tile)

    def _decode_tile(self, z: int, x: int, y: int) -> List[Tuple[RouteWay, LineString]]:
        ways: List[Tuple[RouteWay, LineString]] = []
        buf = _fetch_mvt(self._conn, z, x, y)
        if buf:
            try:
                decoded = mvt_decode(_maybe_decompress(buf), default_options={"y_coord_down": True})
            except Exception as e:
                raise SegmentStoreError("Cannot decode tile %d/%d/%d: %s" % (z, x, y, e)) from e
            for layer_name, layer in decoded.items():
                extent = int(layer.get("extent") or DEFAULT_EXTENT)
                for feat_idx, f in enumerate(layer.get("features", []) or []):
                    props = f.get("properties") or {}
                    if not self.key_filter.convert(props):
                        continue
                    geom = f.get("geometry") or {}
                    gtype = geom.get("type")
                    coords = geom.get("coordinates")
                    if not coords or gtype not in {"LineString", "MultiLineString"}:
                        continue
                    raw_id = _feature_id(f, props)
                    if raw_id is None:
                        raw_id = "#%d" % feat_idx
                    parts = [coords] if gtype == "LineString" else coords
                    for part_idx, part in enumerate(parts):
                        pts = [tile_point_to_31(z, x, y, px, py, extent) for (px, py) in part]
                        if len(pts) < 2:
                            continue
                        way = RouteWay(
                            id=(layer_name, raw_id, x, y, part_idx),
                            xs=[p[0] for p in pts],
                            ys=[p[1] for p in pts],
                            tags=dict(props),
                        )
                        ways.append((way, LineString(pts)))
        logger.debug("Decoded tile %d/%d/%d: %d route ways", z, x, y, len(ways))
        return ways

    def ways_in_bbox(self, left: int, top: int, right: int, bottom: int) -> List[RouteWay]:
        query = box(left, top, right, bottom) if (left, top) != (right, bottom) else None
        res: List[RouteWay] = []
        # clipped parts end exactly on tile borders, so look one unit around the bbox
        for (z, x, y) in tiles_for_bbox31(left - 1, top - 1, right + 1, bottom + 1, self.zoom):
            for way, line in self._tile_ways(z, x, y):
                if query is None:
                    if any(wx == left and wy == top for wx, wy in zip(way.xs, way.ys)):
                        res.append(way)
                elif line.intersects(query):
                    res.append(way)
        return res


__all__ = [
    "MBTilesSegmentStore",
    "mbtiles_stats",
    "tile_point_to_31",
    "tiles_for_bbox31",
]
