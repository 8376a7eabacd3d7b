"""Tile grid planning — overlapping, row-major tiles clipped at image edges."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from planseg.errors import InvalidConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tile:
    """One rectangle of the grid in global pixel coordinates."""

    index: int
    origin_x: int
    origin_y: int
    width: int
    height: int
    overlap_with: tuple[int, ...] = ()

    @property
    def x1(self) -> int:
        return self.origin_x + self.width

    @property
    def y1(self) -> int:
        return self.origin_y + self.height

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def slices(self) -> tuple[slice, slice]:
        """(rows, cols) slices into an (H, W, ...) array."""
        return slice(self.origin_y, self.y1), slice(self.origin_x, self.x1)


def _check_geometry(width: int, height: int, tile_size: int, tile_overlap: int) -> None:
    if tile_size <= 0:
        raise InvalidConfiguration(f"tile_size must be positive, got {tile_size}")
    if tile_overlap < 0:
        raise InvalidConfiguration(f"tile_overlap must be non-negative, got {tile_overlap}")
    if tile_overlap >= tile_size:
        raise InvalidConfiguration(
            f"tile_overlap ({tile_overlap}) must be smaller than tile_size ({tile_size})"
        )
    if width <= 0 or height <= 0:
        raise InvalidConfiguration(f"image dimensions must be positive, got {width}x{height}")


def grid_shape(width: int, height: int, tile_size: int, tile_overlap: int) -> tuple[int, int]:
    """(columns, rows) of the grid: ceil(extent / stride) along each axis."""
    _check_geometry(width, height, tile_size, tile_overlap)
    stride = tile_size - tile_overlap
    return math.ceil(width / stride), math.ceil(height / stride)


def _axis_spans(extent: int, tile_size: int, stride: int) -> list[tuple[int, int]]:
    return [(start, min(start + tile_size, extent)) for start in range(0, extent, stride)]


def _axis_neighbors(spans: list[tuple[int, int]]) -> list[list[int]]:
    """For each span, the indices of spans (itself included) it intersects."""
    neighbors: list[list[int]] = []
    for a0, a1 in spans:
        neighbors.append([j for j, (b0, b1) in enumerate(spans) if a0 < b1 and b0 < a1])
    return neighbors


def plan_tiles(width: int, height: int, tile_size: int, tile_overlap: int) -> list[Tile]:
    """Partition a width x height image into overlapping tiles.

    Tiles start every ``tile_size - tile_overlap`` pixels along each axis and
    are clipped at the right/bottom edges, so the last row and column may be
    smaller than ``tile_size`` but are never skipped. Order is row-major.
    """
    _check_geometry(width, height, tile_size, tile_overlap)
    stride = tile_size - tile_overlap

    cols = _axis_spans(width, tile_size, stride)
    rows = _axis_spans(height, tile_size, stride)
    col_neighbors = _axis_neighbors(cols)
    row_neighbors = _axis_neighbors(rows)
    n_cols = len(cols)

    tiles: list[Tile] = []
    for r, (y0, y1) in enumerate(rows):
        for c, (x0, x1) in enumerate(cols):
            index = r * n_cols + c
            overlaps = tuple(
                rr * n_cols + cc
                for rr in row_neighbors[r]
                for cc in col_neighbors[c]
                if rr * n_cols + cc != index
            )
            tiles.append(
                Tile(
                    index=index,
                    origin_x=x0,
                    origin_y=y0,
                    width=x1 - x0,
                    height=y1 - y0,
                    overlap_with=overlaps,
                )
            )

    logger.debug(
        "Tile grid: %dx%d tiles for %dx%d image (size=%d, overlap=%d)",
        n_cols, len(rows), width, height, tile_size, tile_overlap,
    )
    return tiles
