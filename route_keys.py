# route_keys.py
"""
Route identity model for network routes (hiking, cycling, MTB, horse).

Map objects carry the route membership of a way as flat tags:

    route_hiking_1          = ""
    route_hiking_1_network  = "lwn"
    route_hiking_1_name     = "Rennsteig"
    route_bicycle_1_ref     = "D4"

Every numeric index of a route type is one mapped route. A RouteKey is the
(type, attribute set) pair built from the tags of one index, so the same route
gets the same key on every way it runs over.

Usage:
    from route_keys import derive_route_keys, RouteKeyFilter, RouteType

    keys = derive_route_keys({"route_hiking_1": "", "route_hiking_1_network": "lwn"})
    hiking_only = RouteKeyFilter(type_filter={RouteType.HIKING}).convert(tags)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Mapping, Optional, Set

ROUTE_KEY_VALUE_SEPARATOR = "__"


class RouteType(Enum):
    HIKING = "hiking"
    BICYCLE = "bicycle"
    MTB = "mtb"
    HORSE = "horse"

    @property
    def tag(self) -> str:
        return self.value

    @property
    def tag_prefix(self) -> str:
        return "route_" + self.value + "_"


@dataclass(frozen=True)
class RouteKey:
    type: RouteType
    tags: FrozenSet[str]

    def __str__(self) -> str:
        return "Route [type=%s, set=%s]" % (self.type.name, sorted(self.tags))

    def as_dict(self) -> dict:  # convenience for JSON serialization
        return {"type": self.type.tag, "tags": sorted(self.tags)}


def _route_quantity(tags: Mapping[str, str], route_type: RouteType) -> int:
    """Highest index n for which a bare `route_<type>_<n>` tag exists."""
    pattern = re.compile(re.escape(route_type.tag_prefix) + r"(\d+)$")
    q = 0
    for tag in tags:
        m = pattern.match(tag)
        if m:
            q = max(q, int(m.group(1)))
    return q


def _tag_suffix(tag: str, prefix: str) -> Optional[str]:
    # `route_hiking_1` owns `route_hiking_1` and `route_hiking_1_*`, not `route_hiking_10`
    if tag == prefix:
        return ""
    if tag.startswith(prefix + "_"):
        return tag[len(prefix):]
    return None


def derive_route_keys(tags: Mapping[str, Optional[str]]) -> List[RouteKey]:
    """Build one RouteKey per tagged route index found in ``tags``.

    Keys come out grouped by RouteType (declaration order) and then by index.
    An index without any matching tag produces no key.
    """
    keys: List[RouteKey] = []
    for route_type in RouteType:
        base = route_type.tag_prefix[:-1]
        for idx in range(1, _route_quantity(tags, route_type) + 1):
            prefix = route_type.tag_prefix + str(idx)
            attrs: Set[str] = set()
            for tag, value in tags.items():
                suffix = _tag_suffix(tag, prefix)
                if suffix is None:
                    continue
                part = base + suffix
                if value:
                    attrs.add(part + ROUTE_KEY_VALUE_SEPARATOR + str(value))
                else:
                    attrs.add(part)
            if attrs:
                keys.append(RouteKey(route_type, frozenset(attrs)))
    return keys


@dataclass
class RouteKeyFilter:
    """Allow-list applied after key derivation. ``None`` means "all"."""

    key_filter: Optional[Set[RouteKey]] = None
    type_filter: Optional[Set[RouteType]] = None

    def accepts(self, key: RouteKey) -> bool:
        if self.key_filter is not None and key not in self.key_filter:
            return False
        if self.type_filter is not None and key.type not in self.type_filter:
            return False
        return True

    def filter_keys(self, keys: Iterable[RouteKey]) -> List[RouteKey]:
        return [k for k in keys if self.accepts(k)]

    def convert(self, tags: Mapping[str, Optional[str]]) -> List[RouteKey]:
        return self.filter_keys(derive_route_keys(tags))


__all__ = [
    "ROUTE_KEY_VALUE_SEPARATOR",
    "RouteType",
    "RouteKey",
    "RouteKeyFilter",
    "derive_route_keys",
]
