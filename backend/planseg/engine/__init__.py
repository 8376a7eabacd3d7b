"""Pixel-level annotation engine for construction plan rasters."""

from planseg.engine.categories import Category, CategoryTable
from planseg.engine.config import ConfidenceThresholds, PipelineConfig
from planseg.engine.context import PipelineContext, PipelineStage, RasterImage
from planseg.engine.pipeline import CancellationToken, Pipeline, create_pipeline

__all__ = [
    "Category",
    "CategoryTable",
    "ConfidenceThresholds",
    "PipelineConfig",
    "PipelineContext",
    "PipelineStage",
    "RasterImage",
    "CancellationToken",
    "Pipeline",
    "create_pipeline",
]
