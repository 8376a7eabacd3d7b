"""Application configuration from environment variables."""

from __future__ import annotations

from typing import Any

from pydantic_settings import BaseSettings

from planseg.engine.config import ConfidenceThresholds, PipelineConfig


class Settings(BaseSettings):
    planseg_env: str = "development"
    planseg_log_level: str = "info"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    # Pipeline defaults (overridable per request)
    tile_size: int = 672
    tile_overlap: int = 64
    max_concurrent_tiles: int = 6
    inference_timeout: float = 30.0
    min_element_pixels: int = 100
    max_pixels_per_component: int = 500_000
    max_components: int = 500
    seed_stride: int = 1
    trace_contours: bool = False
    confidence_high: float = 0.85
    confidence_medium: float = 0.70
    confidence_low: float = 0.50

    # Upload guard for the HTTP surface
    max_image_pixels: int = 40_000_000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def pipeline_config(self, **overrides: Any) -> PipelineConfig:
        """Build a validated PipelineConfig; keyword overrides win over settings."""
        values: dict[str, Any] = {
            "tile_size": self.tile_size,
            "tile_overlap": self.tile_overlap,
            "max_concurrent_tiles": self.max_concurrent_tiles,
            "inference_timeout": self.inference_timeout,
            "min_element_pixels": self.min_element_pixels,
            "max_pixels_per_component": self.max_pixels_per_component,
            "max_components": self.max_components,
            "seed_stride": self.seed_stride,
            "trace_contours": self.trace_contours,
            "confidence_thresholds": ConfidenceThresholds(
                high=self.confidence_high,
                medium=self.confidence_medium,
                low=self.confidence_low,
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return PipelineConfig(**values).validate()


settings = Settings()
