#!/usr/bin/env python3
"""MBTiles store: tile decode, clipped parts across tile borders, stats."""

import sqlite3

import mapbox_vector_tile
import pytest

from mbtiles_backend import MBTilesSegmentStore, _feature_id, mbtiles_stats, tile_point_to_31, tiles_for_bbox31
from route_keys import RouteType
from route_selector import NetworkRouteSelector
from segment_store import SegmentStoreError

Z = 14
TX, TY = 8692, 5762  # around 47N 11E
ROUTE_PROPS = {"route_hiking_1": "yes", "route_hiking_1_name": "Border Trail", "osm_id": 42}


def encode_tile(wkt_lines, props=ROUTE_PROPS, feature_id=42):
    features = []
    for wkt in wkt_lines:
        feature = {"geometry": wkt, "properties": dict(props)}
        if feature_id is not None:
            feature["id"] = feature_id
        features.append(feature)
    layer = {"name": "routes", "features": features}
    return mapbox_vector_tile.encode([layer], default_options={"y_coord_down": True})


@pytest.fixture
def mbtiles_path(tmp_path):
    path = tmp_path / "routes.mbtiles"
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
    conn.execute(
        "CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)"
    )
    conn.executemany(
        "INSERT INTO metadata VALUES (?, ?)",
        [("name", "test routes"), ("version", "1")],
    )
    tiles = {
        # one way clipped at the border between two tiles
        (TX, TY): encode_tile(["LINESTRING (1000 2048, 4096 2048)"]),
        (TX + 1, TY): encode_tile(["LINESTRING (0 2048, 3000 2048)"]),
        # untagged line in the same tile
        (TX, TY + 1): encode_tile(["LINESTRING (0 0, 100 100)"], {"highway": "path"}),
        # two parallel route lines without any id
        (TX, TY + 5): encode_tile(
            ["LINESTRING (500 1000, 1500 1000)", "LINESTRING (500 1200, 1500 1200)"],
            {"route_hiking_1": "yes"},
            feature_id=None,
        ),
    }
    for (x, y), data in tiles.items():
        conn.execute(
            "INSERT INTO tiles VALUES (?, ?, ?, ?)",
            (Z, x, (2 ** Z - 1) - y, sqlite3.Binary(data)),
        )
    conn.commit()
    conn.close()
    return str(path)


def test_tile_point_to_31_shares_border():
    assert tile_point_to_31(Z, TX, TY, 4096, 2048, 4096) == tile_point_to_31(Z, TX + 1, TY, 0, 2048, 4096)


def test_tiles_for_bbox31():
    shift = 31 - Z
    left, top = TX << shift, TY << shift
    assert tiles_for_bbox31(left, top, left + 10, top + 10, Z) == [(Z, TX, TY)]
    assert len(tiles_for_bbox31(left - 1, top - 1, left + 1, top + 1, Z)) == 4


def test_only_route_features_become_ways(mbtiles_path):
    store = MBTilesSegmentStore(mbtiles_path, zoom=Z)
    shift = 31 - Z
    ways = store.ways_in_bbox(TX << shift, TY << shift, ((TX + 2) << shift) - 1, ((TY + 2) << shift) - 1)
    assert sorted(w.id for w in ways) == [("routes", 42, TX, TY, 0), ("routes", 42, TX + 1, TY, 0)]


def test_border_point_touches_both_parts(mbtiles_path):
    store = MBTilesSegmentStore(mbtiles_path, zoom=Z)
    x, y = tile_point_to_31(Z, TX + 1, TY, 0, 2048, 4096)
    segs = store.segments_touching_point(x, y)
    # forward out of the right part, backward out of the left part
    assert sorted((s.way.id[2], s.start, s.end) for s in segs) == [(TX, 1, 0), (TX + 1, 0, 1)]


def test_route_across_tile_border(mbtiles_path):
    store = MBTilesSegmentStore(mbtiles_path, zoom=Z)
    x, y = tile_point_to_31(Z, TX, TY, 1000, 2048, 4096)
    tracks = NetworkRouteSelector(store).get_routes(x, y)
    assert len(tracks) == 1
    key, track = next(iter(tracks.items()))
    assert key.type is RouteType.HIKING
    assert [len(piece) for piece in track.segments] == [3]


def test_stats(mbtiles_path):
    stats = mbtiles_stats(mbtiles_path)
    assert stats["tile_count"] == 4
    assert stats["min_zoom"] == Z and stats["max_zoom"] == Z
    assert stats["name"] == "test routes"
    assert stats["bounds"] is None


def test_missing_file_is_a_store_error(tmp_path):
    with pytest.raises(SegmentStoreError):
        MBTilesSegmentStore(str(tmp_path / "missing.mbtiles"))


def test_feature_id_zero_is_kept():
    assert _feature_id({"id": 0}, {"osm_id": 7}) == 0
    assert _feature_id({}, {"osm_id": 7}) == 7
    assert _feature_id({}, {}) is None


def test_features_without_id_stay_apart(mbtiles_path):
    store = MBTilesSegmentStore(mbtiles_path, zoom=Z)
    shift = 31 - Z
    left, top = TX << shift, (TY + 5) << shift
    seeds = store.segments_in_tile(left, top, left + (1 << shift) - 1, top + (1 << shift) - 1)
    assert len(seeds) == 1
    key, segs = next(iter(seeds.items()))
    assert len({s.id for s in segs}) == 2

    loaded = NetworkRouteSelector(store).load_candidate_segments(segs[0], key)
    assert sorted(s.id for s in loaded) == [("routes", "#0", TX, TY + 5, 0), ("routes", "#1", TX, TY + 5, 0)]


def test_decoded_tiles_are_bounded(mbtiles_path):
    store = MBTilesSegmentStore(mbtiles_path, zoom=Z, tile_cache_size=2)
    shift = 31 - Z
    for tx in (TX, TX + 1, TX + 3):
        store.ways_in_bbox(tx << shift, TY << shift, tx << shift, (TY << shift) + 10)
    assert store._tile_ways.cache_info().currsize == 2
    # evicted tiles decode again with the same content
    x, y = tile_point_to_31(Z, TX, TY, 1000, 2048, 4096)
    assert len(store.segments_touching_point(x, y)) == 1
