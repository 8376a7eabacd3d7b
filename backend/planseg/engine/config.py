"""Pipeline configuration — tile geometry, extraction caps, rendering knobs."""

from __future__ import annotations

from dataclasses import dataclass, field

from planseg.engine.categories import CategoryTable
from planseg.errors import InvalidConfiguration


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Lower bounds of the high / medium / low confidence bands."""

    high: float = 0.85
    medium: float = 0.70
    low: float = 0.50

    def validate(self) -> None:
        for name, value in (("high", self.high), ("medium", self.medium), ("low", self.low)):
            if not 0.0 < value <= 1.0:
                raise InvalidConfiguration(f"confidence threshold '{name}' must be in (0, 1], got {value}")
        if not self.high > self.medium > self.low:
            raise InvalidConfiguration(
                f"confidence thresholds must be strictly descending, got "
                f"high={self.high} medium={self.medium} low={self.low}"
            )


@dataclass
class PipelineConfig:
    """Controls tiling, concurrency, component extraction and layer rendering."""

    # Tile grid (sized for the classification backend's input)
    tile_size: int = 672
    tile_overlap: int = 64

    # Worker pool
    max_concurrent_tiles: int = 6
    inference_timeout: float = 30.0  # seconds per model call

    # Component extraction
    min_element_pixels: int = 100
    max_pixels_per_component: int = 500_000
    max_components: int = 500
    seed_stride: int = 1  # 1 = every pixel is a candidate seed
    trace_contours: bool = False

    confidence_thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    category_table: CategoryTable = field(default_factory=CategoryTable.default)

    # Rendering
    segmentation_alpha: int = 128
    boundary_thickness: int = 2
    content_opacity: float = 0.7
    heatmap_opacity: float = 0.3

    def validate(self) -> PipelineConfig:
        """Pre-flight checks. Raises InvalidConfiguration on the first violation."""
        if self.tile_size <= 0:
            raise InvalidConfiguration(f"tile_size must be positive, got {self.tile_size}")
        if self.tile_overlap < 0:
            raise InvalidConfiguration(f"tile_overlap must be non-negative, got {self.tile_overlap}")
        if self.tile_overlap >= self.tile_size:
            raise InvalidConfiguration(
                f"tile_overlap ({self.tile_overlap}) must be smaller than tile_size ({self.tile_size})"
            )
        _require_positive("max_concurrent_tiles", self.max_concurrent_tiles)
        _require_positive("min_element_pixels", self.min_element_pixels)
        _require_positive("max_pixels_per_component", self.max_pixels_per_component)
        _require_positive("max_components", self.max_components)
        _require_positive("seed_stride", self.seed_stride)
        _require_positive("boundary_thickness", self.boundary_thickness)
        if self.inference_timeout <= 0:
            raise InvalidConfiguration(f"inference_timeout must be positive, got {self.inference_timeout}")
        if not 0 <= self.segmentation_alpha <= 255:
            raise InvalidConfiguration(f"segmentation_alpha must be in [0, 255], got {self.segmentation_alpha}")
        for name, value in (("content_opacity", self.content_opacity), ("heatmap_opacity", self.heatmap_opacity)):
            if not 0.0 <= value <= 1.0:
                raise InvalidConfiguration(f"{name} must be in [0, 1], got {value}")
        self.confidence_thresholds.validate()
        if not isinstance(self.category_table, CategoryTable):
            raise InvalidConfiguration("category_table must be a CategoryTable")
        return self


def _require_positive(name: str, value: int) -> None:
    if not isinstance(value, int) or value <= 0:
        raise InvalidConfiguration(f"{name} must be a positive integer, got {value!r}")
