"""Tests for tiles.coverage module."""

import pytest

from tiles.coverage import (
    count_tiles,
    iter_tiles,
    lonlat_to_tile,
    tile_overlaps,
    tile_range,
    tile_to_bounds,
)

JAVA = (105.0, -8.8, 114.0, -5.9)


class TestTileMath:
    """Tests for lon/lat to tile conversion."""

    def test_origin(self):
        assert lonlat_to_tile(0.0, 0.0, 1) == (1, 1)
        assert lonlat_to_tile(-180.0, 85.0, 1) == (0, 0)

    def test_clamps_to_grid(self):
        assert lonlat_to_tile(180.0, -90.0, 2) == (3, 3)

    def test_known_tile(self):
        """Jakarta at zoom 12."""
        assert lonlat_to_tile(106.8456, -6.2088, 12) == (3263, 2118)

    def test_bounds_round_trip(self):
        min_lon, min_lat, max_lon, max_lat = tile_to_bounds(3263, 2118, 12)
        assert min_lon <= 106.8456 <= max_lon
        assert min_lat <= -6.2088 <= max_lat

    def test_overlap(self):
        assert tile_overlaps(1, 1, 1, JAVA)
        assert not tile_overlaps(0, 0, 1, JAVA)


class TestTileExpansion:
    """Tests for expanding bounds into tiles."""

    def test_single_tile_at_low_zoom(self):
        assert list(iter_tiles(JAVA, [1])) == [(1, 1, 1)]

    def test_range_is_inclusive(self):
        x_min, y_min, x_max, y_max = tile_range(JAVA, 10)
        assert x_min <= x_max
        assert y_min <= y_max

    @pytest.mark.parametrize('zooms', [[8], [8, 9], [10, 11, 12]])
    def test_count_matches_iteration(self, zooms):
        assert count_tiles(JAVA, zooms) == len(list(iter_tiles(JAVA, zooms)))

    def test_all_tiles_overlap_bounds(self):
        assert all(tile_overlaps(x, y, z, JAVA) for z, x, y in iter_tiles(JAVA, [9]))
