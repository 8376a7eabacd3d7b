"""PipelineContext — the single mutable state object for one annotation run.

Each stage reads the previous stage's outputs from the context and assigns
its own outputs only after it finished, so a failing stage never leaves
half-written buffers behind for the stages after it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from planseg.engine.components import ElementBoundary
from planseg.engine.compositor import AnnotationLayer, LabelRecord
from planseg.engine.statistics import Statistics
from planseg.engine.tiling import Tile
from planseg.errors import Degradation, InvalidConfiguration


@dataclass(frozen=True)
class RasterImage:
    """Decoded image: (H, W, 3) or (H, W, 4) uint8 pixels."""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        px = self.pixels
        if px.ndim != 3 or px.shape[2] not in (3, 4):
            raise InvalidConfiguration(f"expected (H, W, 3|4) pixels, got shape {px.shape}")
        if px.dtype != np.uint8:
            raise InvalidConfiguration(f"expected uint8 pixels, got {px.dtype}")
        if px.shape[0] == 0 or px.shape[1] == 0:
            raise InvalidConfiguration("image has no pixels")

    @classmethod
    def from_array(cls, array: NDArray) -> RasterImage:
        arr = np.asarray(array)
        if arr.dtype != np.uint8:
            raise InvalidConfiguration(f"expected uint8 pixels, got {arr.dtype}")
        if arr.ndim == 2:
            arr = np.repeat(arr[..., np.newaxis], 3, axis=2)
        return cls(np.ascontiguousarray(arr))

    @classmethod
    def from_bytes(cls, width: int, height: int, data: bytes, channels: int = 4) -> RasterImage:
        expected = width * height * channels
        if len(data) != expected:
            raise InvalidConfiguration(
                f"buffer holds {len(data)} bytes, {width}x{height}x{channels} needs {expected}"
            )
        arr = np.frombuffer(data, dtype=np.uint8).reshape(height, width, channels)
        return cls(arr.copy())

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def rgba(self) -> NDArray[np.uint8]:
        if self.pixels.shape[2] == 4:
            return self.pixels.copy()
        alpha = np.full((self.height, self.width, 1), 255, dtype=np.uint8)
        return np.concatenate([self.pixels, alpha], axis=2)


class PipelineStage(enum.IntEnum):
    IDLE = 0
    TILES_PLANNED = 1
    CLASSIFYING = 2
    MERGED = 3
    COMPONENTS_EXTRACTED = 4
    COMPOSITED = 5
    STATS_READY = 6
    FAILED = 99


@dataclass(frozen=True)
class StageFailure:
    stage: PipelineStage
    reason: str


@dataclass
class PipelineContext:
    """Shared state flowing through the tile -> ... -> statistics stages."""

    image: RasterImage

    # --- TileGridPlanner ---
    tiles: list[Tile] = field(default_factory=list)
    grid_shape: tuple[int, int] = (0, 0)

    # --- TileMerger ---
    segmentation: NDArray[np.uint16] | None = None
    confidence: NDArray[np.float32] | None = None
    failed_tiles: list[int] = field(default_factory=list)
    fallback_tiles: list[int] = field(default_factory=list)

    # --- ConnectedComponentExtractor ---
    boundaries: list[ElementBoundary] = field(default_factory=list)
    truncated: bool = False

    # --- AnnotationLayerCompositor ---
    layers: dict[str, AnnotationLayer] = field(default_factory=dict)
    labels: list[LabelRecord] = field(default_factory=list)
    composite: NDArray[np.uint8] | None = None
    diagnostic: NDArray[np.uint8] | None = None

    # --- StatisticsReporter ---
    statistics: Statistics | None = None

    # --- Run metadata ---
    stage: PipelineStage = PipelineStage.IDLE
    failure: StageFailure | None = None
    backend: str = ""
    degradations: list[Degradation] = field(default_factory=list)
    timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def total_pixels(self) -> int:
        return self.width * self.height

    @property
    def degraded(self) -> bool:
        return bool(self.failed_tiles or self.fallback_tiles)

    def metadata(self, category_names: list[str]) -> dict[str, Any]:
        """Summary record handed to whoever persists the outputs."""
        return {
            "dimensions": {"width": self.width, "height": self.height, "total_pixels": self.total_pixels},
            "categories": category_names,
            "element_count": len(self.boundaries),
            "truncated": self.truncated,
            "degraded": self.degraded,
            "failed_tiles": list(self.failed_tiles),
            "fallback_tiles": list(self.fallback_tiles),
            "layers": list(self.layers),
            "tile_grid": {"columns": self.grid_shape[0], "rows": self.grid_shape[1], "tiles": len(self.tiles)},
            "backend": self.backend,
            "stage": self.stage.name,
        }
