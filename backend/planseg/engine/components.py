"""Connected-component extraction over the segmentation map.

Iterative stack-based flood fill (4-connectivity) with one shared visited
bitmap, one byte per pixel. Background and "unclear" pixels are marked
visited up front and never seed a fill. A fill keeps only a running pixel
count, bounding box and coordinate sums, so memory stays O(width x height)
for the bitmap no matter how large a single component grows.

Two caps guard against pathological drawings:
- max_pixels_per_component: the fill stops early and the component is
  flagged truncated (its unvisited remainder may seed further components)
- max_components: the scan stops once that many boundaries were emitted
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace

import numpy as np
from numpy.typing import NDArray
from shapely.geometry import Polygon
from skimage.measure import find_contours
from skimage.segmentation import flood

from planseg.engine.categories import BACKGROUND, UNCLEAR, CategoryTable
from planseg.errors import ComponentLimitExceeded

logger = logging.getLogger(__name__)

# Shapely simplification tolerance for traced outlines, in pixels.
_CONTOUR_TOLERANCE = 1.0


@dataclass(frozen=True)
class ElementBoundary:
    """One connected run of a single category."""

    index: int
    category: int
    bbox: tuple[int, int, int, int]  # min_x, min_y, max_x, max_y (inclusive)
    pixel_count: int
    centroid: tuple[float, float]
    seed: tuple[int, int]
    truncated: bool = False
    contour: tuple[tuple[float, float], ...] = ()

    @property
    def width(self) -> int:
        return self.bbox[2] - self.bbox[0] + 1

    @property
    def height(self) -> int:
        return self.bbox[3] - self.bbox[1] + 1


@dataclass
class ExtractionResult:
    boundaries: list[ElementBoundary] = field(default_factory=list)
    truncated: bool = False
    truncated_components: int = 0
    discarded_components: int = 0
    fills: int = 0


@dataclass
class _Fill:
    count: int
    min_x: int
    min_y: int
    max_x: int
    max_y: int
    sum_x: int
    sum_y: int
    truncated: bool


def excluded_codes(table: CategoryTable) -> list[int]:
    """Codes never extracted as elements (background and unclear)."""
    return [code for code in (table.code_of(BACKGROUND), table.code_of(UNCLEAR)) if code is not None]


def _flood_fill(
    labels: memoryview,
    visited: bytearray,
    width: int,
    height: int,
    start: int,
    category: int,
    max_pixels: int,
) -> _Fill:
    """Bounded flood fill from flat index ``start``; marks pixels visited on pop."""
    sx, sy = start % width, start // width
    fill = _Fill(0, sx, sy, sx, sy, 0, 0, False)
    stack = [start]
    last_row = (height - 1) * width

    while stack and fill.count < max_pixels:
        idx = stack.pop()
        if visited[idx] or labels[idx] != category:
            continue
        visited[idx] = 1
        x, y = idx % width, idx // width
        fill.count += 1
        fill.sum_x += x
        fill.sum_y += y
        if x < fill.min_x:
            fill.min_x = x
        elif x > fill.max_x:
            fill.max_x = x
        if y < fill.min_y:
            fill.min_y = y
        elif y > fill.max_y:
            fill.max_y = y

        if x + 1 < width:
            stack.append(idx + 1)
        if x > 0:
            stack.append(idx - 1)
        if idx < last_row:
            stack.append(idx + width)
        if idx >= width:
            stack.append(idx - width)

    if stack:
        fill.truncated = any(not visited[i] and labels[i] == category for i in stack)
    return fill


def _seed_indices(candidates: NDArray[np.bool_], stride: int) -> NDArray[np.intp]:
    """Row-major flat indices of candidate seeds on a stride grid."""
    height, width = candidates.shape
    if stride == 1:
        return np.flatnonzero(candidates)
    ys = np.arange(0, height, stride)
    xs = np.arange(0, width, stride)
    grid = (ys[:, np.newaxis] * width + xs[np.newaxis, :]).ravel()
    return grid[candidates.ravel()[grid]]


def extract_components(
    segmentation: NDArray[np.uint16],
    table: CategoryTable,
    *,
    min_element_pixels: int = 100,
    max_pixels_per_component: int = 500_000,
    max_components: int = 500,
    seed_stride: int = 1,
    strict: bool = False,
    check_cancelled: Callable[[], None] | None = None,
) -> ExtractionResult:
    """Group same-category connected pixels into ElementBoundary records.

    Boundaries come out in the row-major order their seeds were discovered.
    With ``strict`` a reached cap raises ComponentLimitExceeded instead of
    flagging the result truncated.
    """
    height, width = segmentation.shape
    flat = np.ascontiguousarray(segmentation, dtype=np.uint16).ravel()
    skip = np.isin(flat, excluded_codes(table))
    visited = bytearray(skip.astype(np.uint8).tobytes())
    labels = memoryview(flat)

    seeds = _seed_indices(~skip.reshape(height, width), seed_stride)
    result = ExtractionResult()

    for position, start in enumerate(seeds.tolist()):
        if visited[start]:
            continue
        if len(result.boundaries) >= max_components:
            # Another unvisited seed exists, so the scan really is cut short.
            result.truncated = True
            if strict:
                raise ComponentLimitExceeded(f"more than {max_components} components")
            logger.warning("Component limit reached (%d), stopping extraction", max_components)
            break
        if check_cancelled is not None:
            check_cancelled()

        category = labels[start]
        fill = _flood_fill(labels, visited, width, height, start, category, max_pixels_per_component)
        result.fills += 1

        if fill.truncated:
            result.truncated_components += 1
            result.truncated = True
            if strict:
                raise ComponentLimitExceeded(
                    f"component at ({start % width}, {start // width}) exceeds "
                    f"{max_pixels_per_component} pixels"
                )

        if fill.count < min_element_pixels:
            result.discarded_components += 1
            continue

        result.boundaries.append(
            ElementBoundary(
                index=len(result.boundaries),
                category=int(category),
                bbox=(fill.min_x, fill.min_y, fill.max_x, fill.max_y),
                pixel_count=fill.count,
                centroid=(fill.sum_x / fill.count, fill.sum_y / fill.count),
                seed=(start % width, start // width),
                truncated=fill.truncated,
            )
        )

    if result.truncated_components:
        logger.warning("%d components hit the per-component pixel cap", result.truncated_components)
    logger.info(
        "Extracted %d elements (%d fills, %d below %d px)",
        len(result.boundaries), result.fills, result.discarded_components, min_element_pixels,
    )
    return result


def trace_contour(
    segmentation: NDArray[np.uint16],
    boundary: ElementBoundary,
    tolerance: float = _CONTOUR_TOLERANCE,
) -> tuple[tuple[float, float], ...]:
    """Outline of one element, re-flooded inside its bounding box only.

    Returns (x, y) vertices in global coordinates, simplified with shapely.
    """
    x0, y0, x1, y1 = boundary.bbox
    crop = (segmentation[y0 : y1 + 1, x0 : x1 + 1] == boundary.category).astype(np.uint8)
    sx, sy = boundary.seed
    mask = flood(crop, (sy - y0, sx - x0), connectivity=1)

    # One-pixel margin so outlines touching the crop edge still close.
    padded = np.pad(mask.astype(np.float64), 1)
    contours = find_contours(padded, 0.5)
    if not contours:
        return ()
    outline = max(contours, key=len)
    coords = [(float(c) - 1 + x0, float(r) - 1 + y0) for r, c in outline]
    if len(coords) < 4:
        return tuple(coords)

    poly = Polygon(coords)
    simplified = poly.simplify(tolerance, preserve_topology=True)
    if simplified.is_empty or simplified.geom_type != "Polygon":
        return tuple(coords)
    return tuple((float(x), float(y)) for x, y in simplified.exterior.coords)


def with_contours(
    segmentation: NDArray[np.uint16],
    boundaries: Iterable[ElementBoundary],
) -> list[ElementBoundary]:
    """Copies of the boundaries with traced contours attached."""
    return [replace(b, contour=trace_contour(segmentation, b)) for b in boundaries]
