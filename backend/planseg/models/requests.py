"""API request models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ThresholdOverrides(BaseModel):
    high: float = Field(..., gt=0.0, le=1.0)
    medium: float = Field(..., gt=0.0, le=1.0)
    low: float = Field(..., gt=0.0, le=1.0)


class PipelineOverrides(BaseModel):
    """Per-request overrides of the configured pipeline defaults."""

    tile_size: int | None = None
    tile_overlap: int | None = None
    max_concurrent_tiles: int | None = None
    min_element_pixels: int | None = None
    max_pixels_per_component: int | None = None
    max_components: int | None = None
    seed_stride: int | None = None
    trace_contours: bool | None = None
    confidence_thresholds: ThresholdOverrides | None = None


class AnnotateRequest(BaseModel):
    image: str = Field(..., description="Base64-encoded PNG/JPEG (data URLs accepted)")
    options: PipelineOverrides = Field(
        default_factory=PipelineOverrides,
        description="Optional pipeline overrides (tile geometry, caps, thresholds)",
    )
    include_layers: bool = Field(
        default=False,
        description="Return the individual annotation layers as base64 PNG",
    )
    include_composite: bool = Field(
        default=True,
        description="Return the composite and diagnostic rasters as base64 PNG",
    )
