"""Geometry helpers (core domain): centroids, feature keys and distances."""

from __future__ import annotations

import math
from typing import Any, Optional

from core.coordinates import is_valid_position
from core.models import Coordinates

EARTH_RADIUS_METERS = 6371e3


def _collect_vertices(geometry: dict) -> Optional[list[list[float]]]:
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")

    if geom_type == "Point":
        return [coords]
    if geom_type in {"MultiPoint", "LineString"}:
        return coords if isinstance(coords, list) else None
    if geom_type in {"MultiLineString", "Polygon"}:
        if not isinstance(coords, list):
            return None
        vertices: list[list[float]] = []
        for part in coords:
            if not isinstance(part, list):
                return None
            vertices.extend(_ring_vertices(part) if geom_type == "Polygon" else part)
        return vertices
    if geom_type == "MultiPolygon":
        if not isinstance(coords, list):
            return None
        vertices = []
        for polygon in coords:
            if not isinstance(polygon, list):
                return None
            for ring in polygon:
                if not isinstance(ring, list):
                    return None
                vertices.extend(_ring_vertices(ring))
        return vertices
    return None


def _ring_vertices(ring: list) -> list:
    # The closing vertex repeats the first one and would bias the mean.
    if len(ring) > 1 and ring[0] == ring[-1]:
        return ring[:-1]
    return ring


def centroid(geometry: Any) -> Optional[Coordinates]:
    """Return the mean of all vertices of a geometry, or None if unusable.

    A Point is its own centroid. For lines and polygons every vertex counts
    once. Malformed or empty geometry yields None so callers can skip the
    feature instead of failing the batch.
    """

    if not isinstance(geometry, dict):
        return None
    vertices = _collect_vertices(geometry)
    if not vertices or not all(is_valid_position(v) for v in vertices):
        return None
    lng = sum(v[0] for v in vertices) / len(vertices)
    lat = sum(v[1] for v in vertices) / len(vertices)
    return Coordinates(lat=lat, lng=lng)


def feature_centroids(feature_collection: Optional[dict]) -> list[Coordinates]:
    """Return the centroid of every usable feature in a collection."""

    if not isinstance(feature_collection, dict):
        return []
    centroids: list[Coordinates] = []
    for feature in feature_collection.get("features") or []:
        if not isinstance(feature, dict):
            continue
        point = centroid(feature.get("geometry"))
        if point is not None:
            centroids.append(point)
    return centroids


def feature_key(message_id: str, feature_index: int) -> str:
    """Return a stable key for one feature within one message."""

    if not message_id or not isinstance(message_id, str):
        raise ValueError("Invalid message_id: must be a non-empty string")
    if isinstance(feature_index, bool) or not isinstance(feature_index, int) or feature_index < 0:
        raise ValueError("Invalid feature_index: must be a non-negative integer")
    return f"{message_id}-{feature_index}"


def distance_meters(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance between two points in meters."""

    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    h = min(1.0, h)
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def min_distance_meters(origin: Coordinates, points: list[Coordinates]) -> Optional[float]:
    """Return the smallest distance from ``origin`` to any point, or None."""

    if not points:
        return None
    return min(distance_meters(origin, point) for point in points)
