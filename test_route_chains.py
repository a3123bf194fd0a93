#!/usr/bin/env python3
"""Chain arena and endpoint indices: lookup, reverse, append, trimming."""

import pytest

from route_chains import ChainIndex, ChainIndexError


def test_build_indexes_every_chain_once(make_segment):
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(100, 0), (200, 0)])
    c = make_segment(3, [(0, 0), (0, 100)])
    index = ChainIndex.build([a, b, c])
    index.check_consistency()
    assert len(index) == 3
    start = index.start_index[index.get(0).start_key]
    assert start == [0, 2]  # a and c share their start point
    assert [ch.id for ch in index.live_chains()] == [0, 2, 1]


def test_lookup_exact_with_exclusion(make_segment):
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(0, 0), (0, 100)])
    c = make_segment(3, [(500, 0), (600, 0)])
    index = ChainIndex.build([a, b, c])
    ca, cc = index.get(0), index.get(2)
    pnt = ca.start_key

    assert [ch.id for ch in index.starting_at(pnt, 0)] == [0, 1]
    assert [ch.id for ch in index.starting_at(pnt, 0, ca)] == [1]
    # excluded chain absent from the bucket: bucket comes back whole
    assert [ch.id for ch in index.starting_at(pnt, 0, cc)] == [0, 1]
    # excluding the only chain leaves nothing
    assert index.starting_at(cc.start_key, 0, cc) == []
    assert index.starting_at(cc.end_key, 0) == []


def test_lookup_radius(make_segment):
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(130, 0), (300, 0)])
    index = ChainIndex.build([a, b])
    end_a = index.get(0).end_key
    assert index.starting_at(end_a, 0) == []
    assert index.starting_at(end_a, 20) == []
    assert [ch.id for ch in index.starting_at(end_a, 40)] == [1]


def test_reverse_rekeys_both_indices(make_segment):
    a = make_segment(1, [(0, 0), (50, 0), (100, 0)])
    b = make_segment(2, [(100, 0), (200, 0)])
    index = ChainIndex.build([a, b])
    index.append(index.get(0), index.get(1))
    chain = index.get(0)
    old_start, old_end = chain.start_point, chain.end_point

    index.reverse(chain)
    index.check_consistency()
    assert chain.start_point == old_end
    assert chain.end_point == old_start
    assert [s.id for s in chain.segments] == [2, 1]
    assert all(s.is_reversed for s in chain.segments)
    assert chain.start_key in index.start_index
    assert old_start not in [index.get(c).start_point for bucket in index.start_index.values() for c in bucket]


def test_append_exact_join(make_segment):
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(100, 0), (200, 0)])
    index = ChainIndex.build([a, b])
    merged = index.append(index.get(0), index.get(1))
    index.check_consistency()
    assert len(index) == 1
    assert [s.id for s in merged.segments] == [1, 2]
    # exact joins are never trimmed
    assert merged.segments[0] == a and merged.segments[1] == b


def test_append_to_itself_is_fatal(make_segment):
    index = ChainIndex.build([make_segment(1, [(0, 0), (100, 0)])])
    chain = index.get(0)
    with pytest.raises(ChainIndexError):
        index.append(chain, chain)


def test_append_consumed_chain_is_fatal(make_segment):
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(100, 0), (200, 0)])
    index = ChainIndex.build([a, b])
    ca, cb = index.get(0), index.get(1)
    index.append(ca, cb)
    with pytest.raises(ChainIndexError):
        index.append(ca, cb)
    with pytest.raises(ChainIndexError):
        index.get(1)


def test_append_trims_base_overshoot(make_segment):
    # base runs 20 m past the junction, the addition starts 5 m beside it
    a = make_segment(1, [(0, 0), (100, 0), (120, 0)])
    b = make_segment(2, [(100, 5), (100, 100)])
    index = ChainIndex.build([a, b])
    merged = index.append(index.get(0), index.get(1))
    index.check_consistency()
    assert [s.id for s in merged.segments] == [1, 2]
    assert (merged.segments[0].start, merged.segments[0].end) == (0, 1)
    assert (merged.segments[1].start, merged.segments[1].end) == (0, 1)


def test_append_trims_addition_overshoot(make_segment):
    # the addition starts 30 m before the base end
    a = make_segment(1, [(0, 0), (100, 0)])
    b = make_segment(2, [(70, 0), (102, 3), (200, 0)])
    index = ChainIndex.build([a, b])
    merged = index.append(index.get(0), index.get(1))
    assert (merged.segments[0].start, merged.segments[0].end) == (0, 1)
    assert (merged.segments[1].start, merged.segments[1].end) == (1, 2)
    assert merged.end_point == b.end_point
