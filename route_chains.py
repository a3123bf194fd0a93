# route_chains.py
"""
Chains of route segments and the two endpoint indices over them.

A chain is an ordered run of segments forming one polyline. Chains live in an
arena keyed by a stable integer id; the start index and the end index map a
packed endpoint key to the ids of the chains starting (resp. ending) there.

Every mutation goes through `ChainIndex.reverse` and `ChainIndex.append`, which
keep this invariant:

    each live chain id sits in exactly one start bucket (its start key) and
    exactly one end bucket (its end key).

Breaking it is a programming error and raises ChainIndexError.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from route_segments import (
    NetworkRouteSegment,
    Point31,
    convert_point_to_key,
    get_x_from_key,
    get_y_from_key,
    square_root_dist31,
)

logger = logging.getLogger("routes.chains")

ChainBuckets = Dict[int, List[int]]  # point key -> chain ids


class ChainIndexError(RuntimeError):
    """Endpoint indices are inconsistent, or an impossible join was requested."""


class NetworkRouteSegmentChain:
    def __init__(self, chain_id: int, segments: List[NetworkRouteSegment]):
        self.id = chain_id
        self.segments = segments

    @property
    def size(self) -> int:
        return len(self.segments)

    @property
    def first(self) -> NetworkRouteSegment:
        return self.segments[0]

    @property
    def last(self) -> NetworkRouteSegment:
        return self.segments[-1]

    @property
    def start_point(self) -> Point31:
        return self.first.start_point

    @property
    def end_point(self) -> Point31:
        return self.last.end_point

    @property
    def start_key(self) -> int:
        return convert_point_to_key(*self.start_point)

    @property
    def end_key(self) -> int:
        return convert_point_to_key(*self.end_point)

    def __repr__(self) -> str:
        return "Chain(id=%d, size=%d, ways=%s)" % (self.id, self.size, [s.id for s in self.segments])


def _add(index: ChainBuckets, key: int, chain_id: int) -> None:
    index.setdefault(key, []).append(chain_id)


def _remove(index: ChainBuckets, key: int, chain_id: int) -> None:
    bucket = index.get(key)
    if bucket is None or chain_id not in bucket:
        raise ChainIndexError("Chain %d is not indexed under key %d" % (chain_id, key))
    bucket.remove(chain_id)
    if not bucket:
        del index[key]


class ChainIndex:
    """Arena of chains plus the start/end endpoint indices."""

    def __init__(self):
        self.chains: Dict[int, NetworkRouteSegmentChain] = {}
        self.start_index: ChainBuckets = {}
        self.end_index: ChainBuckets = {}
        self._next_id = 0

    # ---------------- Construction -----------------
    @classmethod
    def build(cls, segments: Iterable[NetworkRouteSegment]) -> "ChainIndex":
        """One singleton chain per segment, indexed by start, then by end."""
        idx = cls()
        for s in segments:
            chain = NetworkRouteSegmentChain(idx._next_id, [s])
            idx._next_id += 1
            idx.chains[chain.id] = chain
            _add(idx.start_index, chain.start_key, chain.id)
        idx.rebuild_end_index()
        return idx

    def rebuild_end_index(self) -> ChainBuckets:
        """Re-key every chain of the start index under its end point."""
        self.end_index = {}
        for bucket in self.start_index.values():
            for cid in bucket:
                _add(self.end_index, self.chains[cid].end_key, cid)
        return self.end_index

    # ---------------- Access -----------------------
    def __len__(self) -> int:
        return len(self.chains)

    def get(self, chain_id: int) -> NetworkRouteSegmentChain:
        try:
            return self.chains[chain_id]
        except KeyError:
            raise ChainIndexError("Unknown chain id %d" % chain_id) from None

    def live_chains(self) -> List[NetworkRouteSegmentChain]:
        """All chains in start-index iteration order."""
        return [self.chains[cid] for bucket in self.start_index.values() for cid in bucket]

    def lookup(
        self,
        index: ChainBuckets,
        pnt: int,
        radius: float,
        exclude: Optional[NetworkRouteSegmentChain] = None,
    ) -> List[NetworkRouteSegmentChain]:
        """Chains of ``index`` at point key ``pnt`` (exact when radius is 0, else within radius meters)."""
        exclude_id = exclude.id if exclude is not None else None
        if radius == 0:
            bucket = index.get(pnt)
            if not bucket:
                return []
            return [self.chains[cid] for cid in bucket if cid != exclude_id]
        x, y = get_x_from_key(pnt), get_y_from_key(pnt)
        res: List[NetworkRouteSegmentChain] = []
        for key, bucket in index.items():
            if square_root_dist31(x, y, get_x_from_key(key), get_y_from_key(key)) < radius:
                res.extend(self.chains[cid] for cid in bucket if cid != exclude_id)
        return res

    def starting_at(self, pnt: int, radius: float, exclude: Optional[NetworkRouteSegmentChain] = None) -> List[NetworkRouteSegmentChain]:
        return self.lookup(self.start_index, pnt, radius, exclude)

    def ending_at(self, pnt: int, radius: float, exclude: Optional[NetworkRouteSegmentChain] = None) -> List[NetworkRouteSegmentChain]:
        return self.lookup(self.end_index, pnt, radius, exclude)

    # ---------------- Mutation ---------------------
    def reverse(self, chain: NetworkRouteSegmentChain) -> NetworkRouteSegmentChain:
        """Flip a chain in place and re-key it in both indices."""
        _remove(self.start_index, chain.start_key, chain.id)
        _remove(self.end_index, chain.end_key, chain.id)
        chain.segments = [s.inverse() for s in reversed(chain.segments)]
        _add(self.start_index, chain.start_key, chain.id)
        _add(self.end_index, chain.end_key, chain.id)
        return chain

    def append(self, base: NetworkRouteSegmentChain, addition: NetworkRouteSegmentChain) -> NetworkRouteSegmentChain:
        """Join ``addition`` onto the end of ``base``; ``addition`` stops existing."""
        if base.id == addition.id:
            raise ChainIndexError("Cannot join chain %d to itself" % base.id)
        _remove(self.start_index, addition.start_key, addition.id)
        _remove(self.end_index, addition.end_key, addition.id)
        _remove(self.end_index, base.end_key, base.id)
        self._trim_junction(base, addition)
        base.segments.extend(addition.segments)
        del self.chains[addition.id]
        _add(self.end_index, base.end_key, base.id)
        return base

    def _trim_junction(self, base: NetworkRouteSegmentChain, addition: NetworkRouteSegmentChain) -> None:
        """Cut overshoot at the joint: re-slice either addition's first or base's last segment."""
        bx, by = base.end_point
        first = addition.first
        fx, fy = first.start_point
        min_start_dist = square_root_dist31(bx, by, fx, fy)
        if min_start_dist == 0:
            return
        min_last_dist = min_start_dist

        # never cut a segment down to a single point
        min_start_ind = first.start
        for i in first.indices():
            if i == first.end:
                continue
            m = square_root_dist31(bx, by, *first.point31(i))
            if m < min_start_dist:
                min_start_ind, min_start_dist = i, m

        last = base.last
        min_last_ind = last.end
        for i in last.indices():
            if i == last.start:
                continue
            m = square_root_dist31(*last.point31(i), fx, fy)
            if m < min_last_dist:
                min_last_ind, min_last_dist = i, m

        if min_last_dist > min_start_dist:
            if min_start_ind != first.start:
                addition.segments[0] = first.sliced(min_start_ind, first.end)
                logger.debug("Trimmed start of way %s to index %d", first.id, min_start_ind)
        elif min_last_ind != last.end:
            base.segments[-1] = last.sliced(last.start, min_last_ind)
            logger.debug("Trimmed end of way %s to index %d", last.id, min_last_ind)

    # ---------------- Diagnostics ------------------
    def check_consistency(self) -> None:
        """Raise ChainIndexError unless every chain is indexed exactly once under its endpoints."""
        for name, index, key_of in (
            ("start", self.start_index, lambda c: c.start_key),
            ("end", self.end_index, lambda c: c.end_key),
        ):
            seen: Dict[int, int] = {}
            for key, bucket in index.items():
                if not bucket:
                    raise ChainIndexError("Empty %s bucket %d" % (name, key))
                for cid in bucket:
                    chain = self.get(cid)
                    if key_of(chain) != key:
                        raise ChainIndexError("Chain %d misplaced in %s index" % (cid, name))
                    seen[cid] = seen.get(cid, 0) + 1
            if set(seen) != set(self.chains) or any(n != 1 for n in seen.values()):
                raise ChainIndexError("%s index does not hold every chain exactly once" % name)


__all__ = [
    "ChainIndexError",
    "NetworkRouteSegmentChain",
    "ChainIndex",
]
