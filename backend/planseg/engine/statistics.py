"""Aggregate statistics over the final buffers and element list."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from numpy.typing import NDArray

from planseg.engine.categories import CategoryTable
from planseg.engine.compositor import confidence_bands

if TYPE_CHECKING:
    from planseg.engine.components import ElementBoundary
    from planseg.engine.config import ConfidenceThresholds


@dataclass(frozen=True)
class CategoryShare:
    pixels: int
    percentage: float


@dataclass(frozen=True)
class ElementSize:
    category: str
    pixels: int


@dataclass
class Statistics:
    total_pixels: int = 0
    categories_found: int = 0
    category_distribution: dict[str, CategoryShare] = field(default_factory=dict)
    high_confidence_pixels: int = 0
    medium_confidence_pixels: int = 0
    low_confidence_pixels: int = 0
    unclear_pixels: int = 0
    average_confidence: float = 0.0
    elements_detected: int = 0
    average_element_size: int = 0
    largest_element: ElementSize | None = None
    smallest_element: ElementSize | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_statistics(
    segmentation: NDArray[np.uint16],
    confidence: NDArray[np.float32],
    boundaries: Sequence[ElementBoundary],
    table: CategoryTable,
    thresholds: ConfidenceThresholds,
) -> Statistics:
    """Pure aggregation; every pixel is counted exactly once."""
    total = int(segmentation.size)
    stats = Statistics(total_pixels=total)

    counts = np.bincount(segmentation.ravel(), minlength=len(table))
    for code, count in enumerate(counts.tolist()):
        if count == 0:
            continue
        stats.category_distribution[table[code].name] = CategoryShare(
            pixels=count,
            percentage=round(count / total * 100.0, 2),
        )
    stats.categories_found = len(stats.category_distribution)

    bands = np.bincount(confidence_bands(confidence, thresholds).ravel(), minlength=4).tolist()
    stats.high_confidence_pixels = bands[0]
    stats.medium_confidence_pixels = bands[1]
    stats.low_confidence_pixels = bands[2]
    stats.unclear_pixels = bands[3]
    stats.average_confidence = float(confidence.astype(np.float64).mean()) if total else 0.0

    stats.elements_detected = len(boundaries)
    if boundaries:
        sizes = [b.pixel_count for b in boundaries]
        stats.average_element_size = sum(sizes) // len(sizes)
        # First occurrence wins ties, matching scan order.
        largest = max(boundaries, key=lambda b: b.pixel_count)
        smallest = min(boundaries, key=lambda b: b.pixel_count)
        stats.largest_element = ElementSize(table[largest.category].name, largest.pixel_count)
        stats.smallest_element = ElementSize(table[smallest.category].name, smallest.pixel_count)

    return stats
