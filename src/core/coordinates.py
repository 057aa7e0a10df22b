"""Coordinate normalization (core domain).

Crawled geometry often repeats the same location with jitter in the 7th
decimal. Rounding every coordinate to a fixed precision before persistence
collapses those near-duplicates into one point.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_PRECISION = 6


def round_coordinate(value: float, precision: int = DEFAULT_PRECISION) -> float:
    """Round half away from zero at ``precision`` decimal digits.

    Rounding goes through the shortest decimal repr of the float, so the
    result follows the digits as written rather than the binary value.
    6 digits is roughly 11 cm at Sofia's latitude.
    """

    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-precision)
    rounded = float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))
    # Normalizes -0.0 to 0.0.
    return rounded + 0.0


def is_valid_position(position: Any) -> bool:
    """Return True for a GeoJSON [lng, lat] pair within global bounds."""

    if not isinstance(position, (list, tuple)) or len(position) < 2:
        return False
    lng, lat = position[0], position[1]
    if isinstance(lng, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lng, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if not (math.isfinite(lng) and math.isfinite(lat)):
        return False
    return -180 <= lng <= 180 and -90 <= lat <= 90


def _round_position(position: list, precision: int) -> list[float]:
    return [round_coordinate(position[0], precision), round_coordinate(position[1], precision)]


def _collapse_consecutive(positions: list[list[float]]) -> list[list[float]]:
    collapsed: list[list[float]] = []
    for position in positions:
        if collapsed and collapsed[-1] == position:
            continue
        collapsed.append(position)
    return collapsed


def _normalize_positions(raw: Any, precision: int) -> Optional[list[list[float]]]:
    if not isinstance(raw, list) or not raw:
        return None
    if not all(is_valid_position(p) for p in raw):
        return None
    return [_round_position(p, precision) for p in raw]


def _normalize_line(raw: Any, precision: int) -> Optional[list[list[float]]]:
    positions = _normalize_positions(raw, precision)
    if positions is None:
        return None
    line = _collapse_consecutive(positions)
    return line if len(line) >= 2 else None


def _normalize_ring(raw: Any, precision: int) -> Optional[list[list[float]]]:
    positions = _normalize_positions(raw, precision)
    if positions is None:
        return None
    ring = _collapse_consecutive(positions)
    if ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    # A closed ring needs at least three distinct corners plus the closing one.
    if len(ring) < 4:
        return None
    return ring


def _normalize_polygon(raw: Any, precision: int) -> Optional[list[list[list[float]]]]:
    if not isinstance(raw, list) or not raw:
        return None
    rings = [_normalize_ring(ring, precision) for ring in raw]
    if any(ring is None for ring in rings):
        return None
    return rings


def normalize_geometry(geometry: Any, precision: int = DEFAULT_PRECISION) -> Optional[dict]:
    """Return a rounded copy of a GeoJSON geometry, or None if malformed."""

    if not isinstance(geometry, dict):
        return None
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")

    if geom_type == "Point":
        if not is_valid_position(coords):
            return None
        return {"type": "Point", "coordinates": _round_position(coords, precision)}

    if geom_type == "MultiPoint":
        positions = _normalize_positions(coords, precision)
        if positions is None:
            return None
        unique: list[list[float]] = []
        for position in positions:
            if position not in unique:
                unique.append(position)
        return {"type": "MultiPoint", "coordinates": unique}

    if geom_type == "LineString":
        line = _normalize_line(coords, precision)
        return None if line is None else {"type": "LineString", "coordinates": line}

    if geom_type == "MultiLineString":
        if not isinstance(coords, list) or not coords:
            return None
        lines = [_normalize_line(line, precision) for line in coords]
        if any(line is None for line in lines):
            return None
        return {"type": "MultiLineString", "coordinates": lines}

    if geom_type == "Polygon":
        polygon = _normalize_polygon(coords, precision)
        return None if polygon is None else {"type": "Polygon", "coordinates": polygon}

    if geom_type == "MultiPolygon":
        if not isinstance(coords, list) or not coords:
            return None
        polygons = [_normalize_polygon(polygon, precision) for polygon in coords]
        if any(polygon is None for polygon in polygons):
            return None
        return {"type": "MultiPolygon", "coordinates": polygons}

    return None


@dataclass(frozen=True)
class NormalizationStats:
    """Counts of features dropped while normalizing a collection."""

    kept: int
    invalid: int
    duplicate_points: int


def normalize_geojson(
    feature_collection: Optional[dict], precision: int = DEFAULT_PRECISION
) -> tuple[Optional[dict], NormalizationStats]:
    """Round every coordinate of a FeatureCollection and drop bad features.

    - Features whose geometry is malformed or outside global bounds are dropped.
    - Point features that round onto an earlier point are dropped, keeping the
      first one (and its properties).
    - Properties that are not a mapping are replaced by an empty one.
    - Returns ``(None, stats)`` when nothing usable is left.
    """

    if not isinstance(feature_collection, dict):
        return None, NormalizationStats(kept=0, invalid=0, duplicate_points=0)

    raw_features = feature_collection.get("features")
    if not isinstance(raw_features, list):
        return None, NormalizationStats(kept=0, invalid=1, duplicate_points=0)

    features: list[dict] = []
    seen_points: set[tuple[float, float]] = set()
    invalid = 0
    duplicates = 0

    for raw in raw_features:
        geometry = normalize_geometry(raw.get("geometry") if isinstance(raw, dict) else None, precision)
        if geometry is None:
            invalid += 1
            continue
        if geometry["type"] == "Point":
            key = (geometry["coordinates"][0], geometry["coordinates"][1])
            if key in seen_points:
                duplicates += 1
                continue
            seen_points.add(key)
        properties = raw.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        features.append({"type": "Feature", "geometry": geometry, "properties": dict(properties)})

    if invalid:
        LOGGER.warning("Dropped %s malformed feature(s) during normalization", invalid)

    stats = NormalizationStats(kept=len(features), invalid=invalid, duplicate_points=duplicates)
    if not features:
        return None, stats
    return {"type": "FeatureCollection", "features": features}, stats


def dedupe_points(
    points: Iterable[tuple[float, float]], precision: int = DEFAULT_PRECISION
) -> list[tuple[float, float]]:
    """Round (lat, lng) pairs and drop those that collapse onto an earlier one."""

    unique: list[tuple[float, float]] = []
    seen: set[tuple[float, float]] = set()
    for lat, lng in points:
        key = (round_coordinate(lat, precision), round_coordinate(lng, precision))
        if key in seen:
            continue
        seen.add(key)
        unique.append(key)
    return unique
