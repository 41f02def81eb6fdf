"""Geo math: haversine distance and fixed-size metric grid bucketing."""

import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple

R = 6_371_000.0  # mean Earth radius in meters (spherical approximation)
METERS_PER_DEGREE_LAT = 111_320.0


class LngLat(NamedTuple):
    lng: float
    lat: float


@dataclass
class GridCell:
    grid_id: str
    count: int
    center: LngLat


def offset_point(lat: float, lon: float, dx: float, dy: float) -> tuple[float, float]:
    """Compute new lat/lon by shifting dx meters east and dy meters north."""
    new_lat = lat + (dy / R) * (180.0 / math.pi)
    new_lon = lon + (dx / (R * math.cos(math.radians(lat)))) * (180.0 / math.pi)
    return new_lat, new_lon


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two lat/lon points (haversine formula)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return 2 * R * math.asin(min(1.0, math.sqrt(a)))


def distance_m(a: LngLat, b: LngLat) -> float:
    return haversine(a.lat, a.lng, b.lat, b.lng)


def grid_coords(point: LngLat, cell_size_m: float, origin_lng: float = 0.0, origin_lat: float = 0.0) -> tuple[int, int]:
    """Integer cell coordinates of a point on an approximate planar projection."""
    meters_per_degree_lng = math.cos(math.radians(point.lat)) * METERS_PER_DEGREE_LAT
    x_m = (point.lng - origin_lng) * meters_per_degree_lng
    y_m = (point.lat - origin_lat) * METERS_PER_DEGREE_LAT
    return math.floor(x_m / cell_size_m), math.floor(y_m / cell_size_m)


def grid_id(point: LngLat, cell_size_m: float, origin_lng: float = 0.0, origin_lat: float = 0.0) -> str:
    x, y = grid_coords(point, cell_size_m, origin_lng, origin_lat)
    return f"{x}:{y}"


def aggregate_to_grid(points: Iterable[LngLat], cell_size_m: float) -> list[GridCell]:
    """Bucket points into grid cells, busiest cell first.

    Each cell's center is the centroid of its member points. An empty input
    gives an empty list.
    """
    buckets: dict[str, list[float]] = {}
    for p in points:
        key = grid_id(p, cell_size_m)
        acc = buckets.get(key)
        if acc is None:
            acc = buckets[key] = [0, 0.0, 0.0]
        acc[0] += 1
        acc[1] += p.lng
        acc[2] += p.lat

    cells = [
        GridCell(grid_id=key, count=n, center=LngLat(sum_lng / n, sum_lat / n))
        for key, (n, sum_lng, sum_lat) in buckets.items()
    ]
    cells.sort(key=lambda c: c.count, reverse=True)
    return cells


def bounding_box(center: LngLat, radius_m: float, margin: float = 1.1) -> tuple[float, float, float, float]:
    """(min_lng, min_lat, max_lng, max_lat) around a circle, padded by ``margin``."""
    reach = radius_m * margin
    max_lat, max_lng = offset_point(center.lat, center.lng, reach, reach)
    min_lat, min_lng = offset_point(center.lat, center.lng, -reach, -reach)
    return min_lng, min_lat, max_lng, max_lat


def count_within(points: Iterable[LngLat], target: LngLat, radius_m: float) -> int:
    """Points within ``radius_m`` of ``target``.

    A coarse lat/lon box rejects far points before haversine. The longitude
    bound is dropped when the box crosses the antimeridian.
    """
    min_lng, min_lat, max_lng, max_lat = bounding_box(target, radius_m)
    check_lng = -180.0 <= min_lng and max_lng <= 180.0
    count = 0
    for p in points:
        if not min_lat <= p.lat <= max_lat:
            continue
        if check_lng and not min_lng <= p.lng <= max_lng:
            continue
        if distance_m(p, target) <= radius_m:
            count += 1
    return count
