"""Web Mercator tile math and expansion of a bounding region into tiles."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from shared.constants import MERCATOR_MAX_LAT_DEG

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

Bounds = tuple[float, float, float, float]  # min_lon, min_lat, max_lon, max_lat


def lonlat_to_tile(lon: float, lat: float, zoom: int) -> tuple[int, int]:
    """Tile containing WGS84 (lon, lat) at ``zoom``, clamped to the grid."""
    lat = min(max(lat, -MERCATOR_MAX_LAT_DEG), MERCATOR_MAX_LAT_DEG)
    n = 2**zoom
    x = int((lon + 180.0) / 360.0 * n)
    lat_rad = math.radians(lat)
    y = int((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def tile_to_bounds(x: int, y: int, zoom: int) -> Bounds:
    """WGS84 bounds of tile (x, y) at ``zoom``."""
    n = 2**zoom
    min_lon = x / n * 360.0 - 180.0
    max_lon = (x + 1) / n * 360.0 - 180.0
    max_lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))
    min_lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * (y + 1) / n))))
    return min_lon, min_lat, max_lon, max_lat


def tile_overlaps(x: int, y: int, zoom: int, bounds: Bounds) -> bool:
    """True when the tile's area overlaps ``bounds``."""
    t_min_lon, t_min_lat, t_max_lon, t_max_lat = tile_to_bounds(x, y, zoom)
    min_lon, min_lat, max_lon, max_lat = bounds
    overlaps_lon = t_min_lon < max_lon and t_max_lon > min_lon
    overlaps_lat = t_min_lat < max_lat and t_max_lat > min_lat
    return overlaps_lon and overlaps_lat


def tile_range(bounds: Bounds, zoom: int) -> tuple[int, int, int, int]:
    """Inclusive (x_min, y_min, x_max, y_max) tile range covering ``bounds``."""
    min_lon, min_lat, max_lon, max_lat = bounds
    x_min, y_min = lonlat_to_tile(min_lon, max_lat, zoom)
    x_max, y_max = lonlat_to_tile(max_lon, min_lat, zoom)
    return x_min, y_min, x_max, y_max


def count_tiles(bounds: Bounds, zooms: Iterable[int]) -> int:
    total = 0
    for z in zooms:
        x_min, y_min, x_max, y_max = tile_range(bounds, z)
        total += (x_max - x_min + 1) * (y_max - y_min + 1)
    return total


def iter_tiles(bounds: Bounds, zooms: Iterable[int]) -> Iterator[tuple[int, int, int]]:
    """Yield (zoom, x, y) for every tile covering ``bounds`` at each zoom."""
    for z in zooms:
        x_min, y_min, x_max, y_max = tile_range(bounds, z)
        for x in range(x_min, x_max + 1):
            for y in range(y_min, y_max + 1):
                yield z, x, y
