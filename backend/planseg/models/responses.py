"""API response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    backend: str = "rules"
    categories: int = 0


class CategoryInfo(BaseModel):
    code: int
    name: str
    label: str
    color: tuple[int, int, int]


class CategoriesResponse(BaseModel):
    categories: list[CategoryInfo] = Field(default_factory=list)


class ElementOut(BaseModel):
    index: int
    category: str
    bbox: tuple[int, int, int, int]
    pixel_count: int
    centroid: tuple[float, float]
    truncated: bool = False
    contour: list[tuple[float, float]] = Field(default_factory=list)


class LabelOut(BaseModel):
    text: str
    x: int
    y: int
    category: str
    area: int
    dimensions: str


class DegradationOut(BaseModel):
    kind: str
    message: str
    tile_index: int | None = None


class AnnotateResponse(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)
    statistics: dict[str, Any] = Field(default_factory=dict)
    elements: list[ElementOut] = Field(default_factory=list)
    labels: list[LabelOut] = Field(default_factory=list)
    degradations: list[DegradationOut] = Field(default_factory=list)
    layers: dict[str, str] = Field(default_factory=dict)
    composite: str | None = None
    diagnostic: str | None = None
    timings_ms: dict[str, float] = Field(default_factory=dict)
    processing_time_ms: float = 0.0
