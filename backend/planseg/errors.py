"""Error taxonomy for the annotation pipeline.

Fatal conditions (bad configuration, image decode/encode) are raised to the
caller. Recoverable conditions are raised at the seam that detects them,
caught by the pipeline, and recorded on the context as Degradation entries.
"""

from __future__ import annotations

from dataclasses import dataclass


class PlanSegError(Exception):
    """Base exception for the package."""


class InvalidConfiguration(PlanSegError, ValueError):
    """Pre-flight configuration failure (tile geometry, category table, thresholds)."""


class BackendUnavailable(PlanSegError):
    """Model backend not loaded or inference timed out."""


class TileProcessingFailure(PlanSegError):
    """Classification of a single tile failed."""

    def __init__(self, message: str, tile_index: int | None = None) -> None:
        super().__init__(message)
        self.tile_index = tile_index


class ComponentLimitExceeded(PlanSegError):
    """Per-component or global component cap reached during extraction."""


class IOFailure(PlanSegError):
    """Image decode/encode failure at the external boundary."""


class ImageTooLarge(IOFailure):
    """The image holds more pixels than the configured limit."""


class PipelineStateError(PlanSegError):
    """A stage was invoked before its inputs were produced."""


class PipelineCancelled(PlanSegError):
    """Cooperative cancellation was requested."""


@dataclass(frozen=True)
class Degradation:
    """A recoverable condition surfaced through metadata.

    kind:
      - backend_unavailable
      - tile_processing_failure
      - component_limit_exceeded
    """

    kind: str
    message: str
    tile_index: int | None = None
