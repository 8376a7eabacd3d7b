"""Tests for the tile grid planner."""

import numpy as np
import pytest

from planseg.engine.tiling import grid_shape, plan_tiles
from planseg.errors import InvalidConfiguration


def _coverage(tiles, width, height):
    hits = np.zeros((height, width), dtype=np.int32)
    for t in tiles:
        rows, cols = t.slices()
        hits[rows, cols] += 1
    return hits


def test_single_tile_when_image_fits():
    tiles = plan_tiles(50, 40, tile_size=672, tile_overlap=64)
    assert len(tiles) == 1
    t = tiles[0]
    assert (t.origin_x, t.origin_y, t.width, t.height) == (0, 0, 50, 40)
    assert t.overlap_with == ()


def test_grid_shape_matches_tile_count():
    cols, rows = grid_shape(1000, 700, tile_size=300, tile_overlap=50)
    assert (cols, rows) == (4, 3)
    assert len(plan_tiles(1000, 700, 300, 50)) == cols * rows


def test_row_major_order_and_indices():
    tiles = plan_tiles(100, 60, tile_size=40, tile_overlap=10)
    assert [t.index for t in tiles] == list(range(len(tiles)))
    origins = [(t.origin_y, t.origin_x) for t in tiles]
    assert origins == sorted(origins)


@pytest.mark.parametrize("width,height,size,overlap", [(100, 100, 32, 8), (97, 45, 20, 5), (64, 64, 64, 0), (10, 300, 7, 3)])
def test_every_pixel_covered(width, height, size, overlap):
    tiles = plan_tiles(width, height, size, overlap)
    hits = _coverage(tiles, width, height)
    assert hits.min() >= 1
    for t in tiles:
        assert t.x1 <= width and t.y1 <= height
        assert 0 < t.width <= size and 0 < t.height <= size


def test_adjacent_tiles_overlap():
    size, overlap = 32, 8
    tiles = plan_tiles(100, 100, size, overlap)
    by_index = {t.index: t for t in tiles}
    for t in tiles:
        for other_index in t.overlap_with:
            other = by_index[other_index]
            assert t.index in other.overlap_with
            # Horizontal neighbours on the same row share at least the overlap band.
            if other.origin_y == t.origin_y and other.origin_x > t.origin_x:
                shared = t.x1 - other.origin_x
                assert shared >= min(overlap, other.width)


def test_edge_tiles_clipped_not_skipped():
    tiles = plan_tiles(50, 50, 32, 8)
    xs = sorted({t.origin_x for t in tiles})
    assert xs == [0, 24, 48]
    last = [t for t in tiles if t.origin_x == 48][0]
    assert last.width == 2


@pytest.mark.parametrize(
    "width,height,size,overlap",
    [(10, 10, 0, 0), (10, 10, 8, 8), (10, 10, 8, 9), (10, 10, 8, -1), (0, 10, 8, 2)],
)
def test_invalid_geometry(width, height, size, overlap):
    with pytest.raises(InvalidConfiguration):
        plan_tiles(width, height, size, overlap)
