# main.py
from fastapi import FastAPI, HTTPException, Body, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
from functools import lru_cache
from pydantic import BaseModel, Field
from typing import List, Any

import networkx as nx

from mbtiles_backend import MBTilesSegmentStore, mbtiles_stats
from route_chains import ChainIndex
from route_segments import convert_point_to_key, latlon_to_31
from route_selector import DEFAULT_CONFIG, MergeConfig, NetworkRouteSelector, merge_chains, with_overrides
from segment_store import GeoJSONSegmentStore, SegmentStore, SegmentStoreError

MBTILES_PATH = os.getenv("ROUTES_MBTILES_PATH")
GEOJSON_PATH = os.getenv("ROUTES_GEOJSON_PATH", "./routes.geojson")


class NoRouteDataError(Exception):
    pass


class RoutePoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class RoutesResponse(BaseModel):
    type: str = "FeatureCollection"
    features: List[dict]
    meta: dict


app = FastAPI()
# Allow any origin (dev / testing). Tighten in production if needed.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Basic logging config; respect LOG_LEVEL env var (default INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("routes.api")


@lru_cache(maxsize=1)
def get_store() -> SegmentStore:
    """Store selected by environment: MBTiles when ROUTES_MBTILES_PATH is set, else GeoJSON."""
    if MBTILES_PATH:
        return MBTilesSegmentStore(MBTILES_PATH)
    return GeoJSONSegmentStore.from_file(GEOJSON_PATH)


def get_config() -> MergeConfig:
    connect = os.getenv("ROUTES_CONNECT_DISTANCE_M")
    if connect:
        return with_overrides(DEFAULT_CONFIG, connect_distance=float(connect))
    return DEFAULT_CONFIG


def find_routes(store: SegmentStore, point: RoutePoint, config: MergeConfig) -> List[dict]:
    tracks = NetworkRouteSelector(store, config).get_routes_latlon(point.lat, point.lon)
    if not tracks:
        raise NoRouteDataError("No route segment touches (%s, %s)" % (point.lat, point.lon))
    return [t.to_geojson() for t in tracks.values()]


@app.get("/routes", response_model=RoutesResponse)
def routes(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    store: SegmentStore = Depends(get_store),
    config: MergeConfig = Depends(get_config),
):
    """Rebuild every network route passing through a way vertex at (lat, lon)."""
    point = RoutePoint(lat=lat, lon=lon)
    logger.info("/routes: lat=%s lon=%s", lat, lon)
    try:
        features = find_routes(store, point, config)
    except NoRouteDataError as e:
        logger.warning("/routes: NoRouteDataError: %s", e)
        raise HTTPException(404, str(e))
    except SegmentStoreError as e:
        logger.error("/routes: store read failed: %s", e)
        raise HTTPException(503, f"Segment store unavailable: {e}")
    meta: dict[str, Any] = {
        "routes": len(features),
        "connect_distance_m": config.connect_distance,
        "source": "mbtiles" if MBTILES_PATH else "geojson",
    }
    logger.info("/routes: success routes=%d", len(features))
    return RoutesResponse(features=features, meta=meta)


@app.get("/debug/mbtiles")
def debug_mbtiles():
    """Return basic MBTiles metadata/stats for debugging."""
    if not MBTILES_PATH:
        raise HTTPException(404, "ROUTES_MBTILES_PATH is not configured")
    try:
        stats = mbtiles_stats(MBTILES_PATH)
        return {"ok": True, "stats": stats}
    except SegmentStoreError as e:
        raise HTTPException(500, f"Failed to read MBTiles stats: {e}")


@app.post("/debug/route")
def debug_route(
    payload: RoutePoint = Body(...),
    store: SegmentStore = Depends(get_store),
    config: MergeConfig = Depends(get_config),
):
    """Candidate and chain counts for each route through a point."""
    selector = NetworkRouteSelector(store, config)
    x, y = latlon_to_31(payload.lat, payload.lon)
    out = []
    seen = set()
    try:
        seeds = store.segments_touching_point(x, y)
        for seed in seeds:
            if seed.route_key in seen:
                continue
            seen.add(seed.route_key)
            loaded = selector.load_candidate_segments(seed, seed.route_key)
            G = nx.Graph()
            for s in loaded:
                G.add_edge(convert_point_to_key(*s.start_point), convert_point_to_key(*s.end_point))
            index = merge_chains(ChainIndex.build(loaded), config)
            out.append({
                "route_key": seed.route_key.as_dict(),
                "candidates": len(loaded),
                "components": nx.number_connected_components(G) if G.number_of_nodes() else 0,
                "chains": len(index),
            })
    except SegmentStoreError as e:
        raise HTTPException(503, f"Segment store unavailable: {e}")
    return {"routes": out, "lat": payload.lat, "lon": payload.lon}
