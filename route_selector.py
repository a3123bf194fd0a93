# route_selector.py
"""
Network route selection: rebuild continuous route tracks from tagged ways.

Given a point on the map, every route passing through it (one per RouteKey) is
reassembled from the fragmented ways carrying the same route tags:

  1. Frontier loading: starting from the tiles of the seed segment's two
     endpoints, walk neighbouring tiles and collect every segment of the route.
  2. Every segment becomes a singleton chain, indexed by start and end point.
  3. Merge passes with growing radius:
       - reverse chains that obviously run the wrong way, then join chains whose
         end meets exactly one other chain's start (0, d/2, d, 2d),
       - at junctions with 3+ chains, join the two longest (radius 0),
       - one more simple pass at d.
  4. Chains are emitted longest first as one track, split where gaps exceed d.

A greedy depth-first "grow" strategy is also available (MergeConfig.use_grow_algorithm).

Usage:
    from segment_store import GeoJSONSegmentStore
    from route_selector import NetworkRouteSelector

    store = GeoJSONSegmentStore.from_file("routes.geojson")
    tracks = NetworkRouteSelector(store).get_routes_latlon(47.98, 11.28)
    for key, track in tracks.items():
        print(key, len(track.segments))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

from route_chains import ChainIndex, ChainIndexError, NetworkRouteSegmentChain
from route_keys import RouteKey
from route_segments import (
    TILE_ZOOM,
    LatLon,
    NetworkRouteSegment,
    Point31,
    get_tile_id,
    latlon_to_31,
    square_root_dist31,
    tile_bounds,
)
from route_tracks import CONNECT_POINTS_DISTANCE, MIN_POINT_DISTANCE, RouteTrack, emit_track
from segment_store import SegmentStore

logger = logging.getLogger("routes.selector")

# --------------------------- Config ---------------------------

MAX_ITERATIONS = 16000
# works only if road in same tile
MAX_RADIUS_HOLE = 30.0
TOLERANCE_BASE = 5.0
TOLERANCE_STEPS = (0.0, 0.5, 1.0, 2.0)  # multiples of connect_distance for the simple passes
FRONTIER_GAP_TILES = 1
LOOP_ID_WINDOW = 50


@dataclass(frozen=True)
class MergeConfig:
    tolerance_base: float = TOLERANCE_BASE
    tolerance_steps: Tuple[float, ...] = TOLERANCE_STEPS
    max_iterations: int = MAX_ITERATIONS
    connect_distance: float = CONNECT_POINTS_DISTANCE
    radius_hole: float = MAX_RADIUS_HOLE
    min_point_distance: float = MIN_POINT_DISTANCE
    frontier_gap_tiles: int = FRONTIER_GAP_TILES
    tile_zoom: int = TILE_ZOOM
    use_grow_algorithm: bool = False

    @property
    def pass_radii(self) -> List[float]:
        return [self.connect_distance * step for step in self.tolerance_steps]


DEFAULT_CONFIG = MergeConfig()


# ------------------------ Merge engine ------------------------

def reverse_to_connect_more(index: ChainIndex, rad: float) -> int:
    """Reverse chains that cannot continue from their end but would from their start.

    Per start bucket, the second chain is reversed when nothing starts at its
    end; the first one when nothing starts at its end and several chains end there.
    """
    reversed_count = 0
    for start_pnt in list(index.start_index):
        bucket = index.start_index.get(start_pnt)
        i = 0
        while bucket is not None and i < len(bucket):
            chain = index.get(bucket[i])
            pnt = chain.end_key
            no_start_from_end = not index.starting_at(pnt, rad)
            reverse = no_start_from_end and i == 1
            reverse = reverse or (i == 0 and no_start_from_end and len(index.ending_at(pnt, rad)) > 1)
            if reverse:
                index.reverse(chain)
                reversed_count += 1
                break
            i += 1
    return reversed_count


def connect_simple_straight(index: ChainIndex, rad: float) -> int:
    """Join chain ends that meet exactly one chain start and no competing chain end."""
    merged = 0
    changed = True
    while changed:
        changed = False
        for chain in index.live_chains():
            pnt = chain.end_key
            connect_next = index.starting_at(pnt, rad, chain)
            connect_to_end = index.ending_at(pnt, rad, chain)
            if len(connect_next) == 1 and not connect_to_end:
                index.append(chain, connect_next[0])
                merged += 1
                changed = True
                break
    return merged


def connect_simple_merge(index: ChainIndex, rad: float) -> int:
    """Alternate reversal and straight merging until a round merges nothing."""
    total = 0
    merged = 1
    while merged > 0:
        reversed_count = reverse_to_connect_more(index, rad)
        merged = connect_simple_straight(index, rad)
        total += merged
        logger.debug("Simple merged: %d, reversed: %d (radius %s)", merged, reversed_count, rad)
    return total


def _near(a: Point31, b: Point31, limit: float) -> bool:
    return square_root_dist31(a[0], a[1], b[0], b[1]) < limit


def _join_longest(
    index: ChainIndex,
    first: NetworkRouteSegmentChain,
    second: NetworkRouteSegmentChain,
    limit: float,
) -> None:
    if _near(first.end_point, second.end_point, limit):
        index.append(first, index.reverse(second))
    elif _near(first.start_point, second.start_point, limit):
        index.append(first, index.reverse(second))
    elif _near(first.end_point, second.start_point, limit):
        index.append(first, second)
    elif _near(second.end_point, first.start_point, limit):
        index.append(second, first)
    else:
        raise ChainIndexError(
            "Chains %d and %d share no endpoint within %.1f m" % (first.id, second.id, limit)
        )


def connect_to_longest_chain(index: ChainIndex, rad: float, tolerance_base: float = TOLERANCE_BASE) -> int:
    """At a junction of 3+ chains join the two longest ones."""
    limit = 2 * rad + tolerance_base
    merged = 0
    changed = True
    while changed:
        changed = False
        for chain in index.live_chains():
            pnt = chain.start_key
            candidates: Dict[int, NetworkRouteSegmentChain] = {chain.id: chain}
            for c in index.starting_at(pnt, rad, chain) + index.ending_at(pnt, rad, chain):
                candidates.setdefault(c.id, c)
            if len(candidates) <= 2:
                continue
            # longest first, creation order on ties
            ordered = sorted(candidates.values(), key=lambda c: (-c.size, c.id))
            _join_longest(index, ordered[0], ordered[1], limit)
            merged += 1
            changed = True
            break
    logger.debug("Connect longest alternative chains: %d (radius %s)", merged, rad)
    return merged


def merge_chains(index: ChainIndex, config: MergeConfig = DEFAULT_CONFIG) -> ChainIndex:
    """Run every merge pass over ``index`` in place."""
    for rad in config.pass_radii:
        connect_simple_merge(index, rad)
    connect_to_longest_chain(index, 0, config.tolerance_base)
    connect_simple_merge(index, config.connect_distance)
    return index


def flatten_chains(index: ChainIndex) -> List[NetworkRouteSegment]:
    """All segments, longest chain first (stable on ties)."""
    chains = sorted(index.live_chains(), key=lambda c: -c.size)
    out: List[NetworkRouteSegment] = []
    for c in chains:
        out.extend(c.segments)
    return out


# ------------------------ Selector ----------------------------

class NetworkRouteSelector:
    """Finds the routes through a point and rebuilds each one as a track."""

    def __init__(self, store: SegmentStore, config: Optional[MergeConfig] = None):
        self.store = store
        self.config = config or DEFAULT_CONFIG

    # ---------------- Entry points -----------------
    def get_routes(self, x: int, y: int, config: Optional[MergeConfig] = None) -> Dict[RouteKey, RouteTrack]:
        """One track per route key among the segments touching the 31-bit point (x, y)."""
        cfg = config or self.config
        res: Dict[RouteKey, RouteTrack] = {}
        for segment in self.store.segments_touching_point(x, y):
            if segment.route_key in res:
                continue
            if cfg.use_grow_algorithm:
                res[segment.route_key] = self.grow_algorithm(segment, cfg)
            else:
                res[segment.route_key] = self.connect_algorithm(segment, cfg)
        return res

    def get_routes_latlon(self, lat: float, lon: float, config: Optional[MergeConfig] = None) -> Dict[RouteKey, RouteTrack]:
        x, y = latlon_to_31(lat, lon)
        return self.get_routes(x, y, config)

    def get_routes_for_object(self, points: Sequence[LatLon], config: Optional[MergeConfig] = None) -> Dict[RouteKey, RouteTrack]:
        """Routes of a rendered map object, looked up at its first point."""
        if not points:
            return {}
        lat, lon = points[0]
        return self.get_routes_latlon(lat, lon, config)

    def get_routes_bbox(self, bbox: Tuple[float, float, float, float]) -> Dict[RouteKey, RouteTrack]:
        raise NotImplementedError("Route selection by bounding box is not supported")

    # ---------------- Frontier loading -------------
    def load_candidate_segments(
        self,
        seed: NetworkRouteSegment,
        route_key: RouteKey,
        config: Optional[MergeConfig] = None,
    ) -> List[NetworkRouteSegment]:
        """Collect the route's segments tile by tile, starting at the seed's endpoint tiles.

        Neighbours of an empty tile are still visited, up to
        ``frontier_gap_tiles`` empty tiles in a row. Store errors propagate.
        """
        cfg = config or self.config
        zoom = cfg.tile_zoom
        result: List[NetworkRouteSegment] = []
        seen_ids: Set = set()
        best_gap: Dict[int, int] = {}
        empty_tiles: Set[int] = set()
        stack: List[Tuple[int, int]] = []
        for point in (seed.start_point, seed.end_point):
            tile = get_tile_id(point[0], point[1], zoom)
            if tile is not None:
                stack.append((tile, 0))

        while stack:
            tile, gap = stack.pop()
            if tile in best_gap and best_gap[tile] <= gap:
                continue
            first_visit = tile not in best_gap
            best_gap[tile] = gap
            left, top, right, bottom = tile_bounds(tile, zoom)
            if first_visit:
                loaded = self.store.segments_in_tile(left, top, right, bottom, route_key).get(route_key, [])
                logger.debug("Load tile %d: %d segments", tile, len(loaded))
                if not loaded:
                    empty_tiles.add(tile)
                for s in loaded:
                    if s.id not in seen_ids:
                        seen_ids.add(s.id)
                        result.append(s)
            if tile in empty_tiles:
                gap += 1
                if gap > cfg.frontier_gap_tiles:
                    continue
            elif first_visit:
                gap = 0
                best_gap[tile] = 0
            else:
                continue

            right += 1
            bottom += 1
            for nx_, ny_ in (
                (right, bottom), (right, top), (right, top - 1),
                (left - 1, bottom), (left - 1, top), (left - 1, top - 1),
                (left, bottom), (left, top - 1),
            ):
                neighbour = get_tile_id(nx_, ny_, zoom)
                if neighbour is not None and best_gap.get(neighbour, gap + 1) > gap:
                    stack.append((neighbour, gap))
        logger.debug("Frontier visited %d tiles, %d segments for %s", len(best_gap), len(result), route_key)
        return result

    # ---------------- Strategies -------------------
    def connect_algorithm(self, segment: NetworkRouteSegment, config: Optional[MergeConfig] = None) -> RouteTrack:
        cfg = config or self.config
        rkey = segment.route_key
        logger.info("START %s", segment)
        loaded = self.load_candidate_segments(segment, rkey, cfg)
        logger.debug("About to merge: %d", len(loaded))
        index = merge_chains(ChainIndex.build(loaded), cfg)
        lst = flatten_chains(index)
        track = emit_track(lst, rkey, cfg.connect_distance, cfg.min_point_distance)
        logger.info(
            "FINISH %s: segments=%d chains=%d track_pieces=%d",
            rkey, len(lst), len(index), len(track.segments),
        )
        return track

    def grow_algorithm(self, segment: NetworkRouteSegment, config: Optional[MergeConfig] = None) -> RouteTrack:
        """Greedy walk: extend from the seed's start, then from its end."""
        cfg = config or self.config
        lst: List[NetworkRouteSegment] = [segment.inverse()]
        visited: Set = {segment.id}
        logger.info("START %s", segment)
        finished = self._grow_until_stuck(lst, visited, cfg)
        lst = [s.inverse() for s in reversed(lst)]
        if finished:
            finished = self._grow_until_stuck(lst, visited, cfg)
        if not finished:
            ids = [s.id for s in reversed(lst[-LOOP_ID_WINDOW:])]
            logger.warning(
                "Route likely has a loop: %s iterations %d ids %s", segment.route_key, cfg.max_iterations, ids
            )
        logger.info("FINISH %s: segments=%d", segment.route_key, len(lst))
        return emit_track(lst, segment.route_key, cfg.connect_distance, cfg.min_point_distance)

    def _grow_until_stuck(self, lst: List[NetworkRouteSegment], visited: Set, cfg: MergeConfig) -> bool:
        """False when the iteration bound was hit."""
        for _ in range(cfg.max_iterations):
            if not self._grow(lst, visited, False, cfg) and not self._grow(lst, visited, True, cfg):
                return True
        return False

    def _grow(self, lst: List[NetworkRouteSegment], visited: Set, approximate: bool, cfg: MergeConfig) -> bool:
        obj = lst[-1]
        x, y = obj.end_point
        if approximate:
            objs = self.store.segments_near_point(x, y, cfg.radius_hole)
        else:
            objs = self.store.segments_touching_point(x, y)
        for ld in objs:
            if ld.route_key == obj.route_key and ld.id not in visited:
                visited.add(ld.id)
                lst.append(ld)
                return True
        return False


def with_overrides(config: MergeConfig, **changes) -> MergeConfig:
    """Copy of ``config`` with some fields replaced."""
    return replace(config, **changes)


__all__ = [
    "MergeConfig",
    "DEFAULT_CONFIG",
    "NetworkRouteSelector",
    "reverse_to_connect_more",
    "connect_simple_straight",
    "connect_simple_merge",
    "connect_to_longest_chain",
    "merge_chains",
    "flatten_chains",
    "with_overrides",
]
