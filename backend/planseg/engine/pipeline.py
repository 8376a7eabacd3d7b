"""Pipeline orchestrator — tile, classify, merge, extract, annotate, report.

Stages run strictly in order on one PipelineContext:

    IDLE -> TILES_PLANNED -> CLASSIFYING -> MERGED -> COMPONENTS_EXTRACTED
         -> COMPOSITED -> STATS_READY

A stage that raises moves the context to FAILED with the stage and reason
recorded, and the exception propagates. A stage called out of order raises
PipelineStateError and leaves the context as it was. Recoverable conditions (model
unavailable or timing out, a tile that fails to classify, extraction caps)
never raise; they are recorded as degradations and surfaced in metadata.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Generator
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from planseg.engine.classifier import (
    ClassificationResult,
    ModelBackend,
    PixelClassifierBackend,
    RuleBasedBackend,
    SegmentationModel,
    create_backend,
)
from planseg.engine.components import extract_components, with_contours
from planseg.engine.compositor import render_annotations
from planseg.engine.config import PipelineConfig
from planseg.engine.context import PipelineContext, PipelineStage, RasterImage, StageFailure
from planseg.engine.merger import TileMerger
from planseg.engine.statistics import compute_statistics
from planseg.engine.tiling import Tile, grid_shape, plan_tiles
from planseg.errors import (
    BackendUnavailable,
    Degradation,
    InvalidConfiguration,
    PipelineCancelled,
    PipelineStateError,
    TileProcessingFailure,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation, checked between tile batches and between seeds."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("annotation run cancelled")


@dataclass
class _TileOutcome:
    tile: Tile
    categories: NDArray[np.uint16] | None = None
    confidences: NDArray[np.float32] | None = None
    fallback_reason: str = ""
    error: str = ""


StageFn = Callable[[PipelineContext, "CancellationToken | None"], None]


class Pipeline:
    """Runs the fixed annotation pipeline for one image at a time."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        backend: PixelClassifierBackend | None = None,
    ) -> None:
        self.config = (config or PipelineConfig()).validate()
        self.table = self.config.category_table
        self.backend = backend or create_backend(self.table, input_size=self.config.tile_size)
        if isinstance(self.backend, ModelBackend) and self.config.tile_size > self.backend.input_size:
            raise InvalidConfiguration(
                f"tile_size {self.config.tile_size} exceeds model input size {self.backend.input_size}"
            )
        if isinstance(self.backend, RuleBasedBackend):
            self.fallback = self.backend
        else:
            self.fallback = RuleBasedBackend(self.table)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def _stages(self) -> list[tuple[str, StageFn]]:
        return [
            ("plan_tiles", self.plan),
            ("classify", self.classify),
            ("extract_components", self.extract),
            ("annotate", self.annotate),
            ("statistics", self.report),
        ]

    def run(
        self,
        image: RasterImage | NDArray | PipelineContext,
        cancel: CancellationToken | None = None,
    ) -> PipelineContext:
        """Run every stage on the image and return the populated context."""
        ctx = self._context_for(image)
        start = time.perf_counter()
        logger.info("Annotating %dx%d image with %s backend", ctx.width, ctx.height, self.backend.name)

        for name, fn in self._stages():
            self._execute(ctx, name, fn, cancel)

        total = (time.perf_counter() - start) * 1000
        logger.info(
            "Annotation complete: %d elements, truncated=%s, degraded=%s in %.0fms",
            len(ctx.boundaries), ctx.truncated, ctx.degraded, total,
        )
        return ctx

    def run_streaming(
        self,
        image: RasterImage | NDArray | PipelineContext,
        cancel: CancellationToken | None = None,
    ) -> Generator[dict[str, Any], None, PipelineContext]:
        """Run the pipeline, yielding a progress dict after each stage.

        The generator's return value is the finished context.
        """
        ctx = self._context_for(image)
        stages = self._stages()
        for i, (name, fn) in enumerate(stages):
            yield {"stage": name, "index": i, "total": len(stages), "status": "running", "elapsed_ms": 0.0}
            self._execute(ctx, name, fn, cancel)
            yield {
                "stage": name,
                "index": i,
                "total": len(stages),
                "status": "ok",
                "elapsed_ms": ctx.timings_ms.get(name, 0.0),
            }
        return ctx

    def metadata(self, ctx: PipelineContext) -> dict[str, Any]:
        return ctx.metadata(self.table.names)

    def _context_for(self, image: RasterImage | NDArray | PipelineContext) -> PipelineContext:
        if isinstance(image, PipelineContext):
            if not image.backend:
                image.backend = self.backend.name
            return image
        if not isinstance(image, RasterImage):
            image = RasterImage.from_array(image)
        return PipelineContext(image=image, backend=self.backend.name)

    def _execute(
        self,
        ctx: PipelineContext,
        name: str,
        fn: StageFn,
        cancel: CancellationToken | None,
    ) -> None:
        t0 = time.perf_counter()
        try:
            fn(ctx, cancel)
        except PipelineStateError:
            # The stage never started; the context keeps its state.
            raise
        except Exception as e:
            # The recorded stage is the last one the context reached.
            if ctx.stage != PipelineStage.FAILED:
                ctx.failure = StageFailure(stage=ctx.stage, reason=str(e) or type(e).__name__)
                ctx.stage = PipelineStage.FAILED
            logger.error("  %s FAILED: %s", name, e)
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        ctx.timings_ms[name] = round(elapsed, 1)
        logger.debug("  %s completed in %.1fms", name, elapsed)

    @staticmethod
    def _require(ctx: PipelineContext, stage: PipelineStage, step: str) -> None:
        if ctx.stage != stage:
            raise PipelineStateError(f"{step} requires stage {stage.name}, context is at {ctx.stage.name}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def plan(self, ctx: PipelineContext, cancel: CancellationToken | None = None) -> None:
        self._require(ctx, PipelineStage.IDLE, "plan")
        cfg = self.config
        tiles = plan_tiles(ctx.width, ctx.height, cfg.tile_size, cfg.tile_overlap)
        ctx.grid_shape = grid_shape(ctx.width, ctx.height, cfg.tile_size, cfg.tile_overlap)
        ctx.tiles = tiles
        ctx.stage = PipelineStage.TILES_PLANNED
        logger.info("Planned %d tiles (%dx%d grid)", len(tiles), *ctx.grid_shape)

    def classify(self, ctx: PipelineContext, cancel: CancellationToken | None = None) -> None:
        """Classify tiles in bounded batches and merge them in tile order."""
        self._require(ctx, PipelineStage.TILES_PLANNED, "classify")
        ctx.stage = PipelineStage.CLASSIFYING

        merger = TileMerger(ctx.width, ctx.height, len(self.table))
        failed: list[int] = []
        fallback: list[int] = []
        degradations: list[Degradation] = []
        batch_size = self.config.max_concurrent_tiles
        pixels = ctx.image.pixels

        inference_pool: ThreadPoolExecutor | None = None
        if isinstance(self.backend, ModelBackend):
            inference_pool = ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="planseg-infer")

        try:
            with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="planseg-tile") as pool:
                for start in range(0, len(ctx.tiles), batch_size):
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    batch = ctx.tiles[start : start + batch_size]
                    futures = [pool.submit(self._classify_tile, pixels, tile, inference_pool) for tile in batch]
                    # Fan-in in tile order, so merge order never depends on which worker finished first.
                    for outcome in [f.result() for f in futures]:
                        self._merge_outcome(merger, outcome, failed, fallback, degradations)
                    logger.debug("Classified tiles %d-%d of %d", start + 1, start + len(batch), len(ctx.tiles))
        finally:
            if inference_pool is not None:
                # Timed-out inference calls are abandoned, not awaited.
                inference_pool.shutdown(wait=False, cancel_futures=True)

        segmentation, confidence = merger.result()
        ctx.segmentation = segmentation
        ctx.confidence = confidence
        ctx.failed_tiles = failed
        ctx.fallback_tiles = fallback
        ctx.degradations.extend(degradations)
        ctx.stage = PipelineStage.MERGED
        if failed or fallback:
            logger.warning("Classification degraded: %d failed tiles, %d fallback tiles", len(failed), len(fallback))

    def _classify_tile(
        self,
        pixels: NDArray[np.uint8],
        tile: Tile,
        inference_pool: Executor | None,
    ) -> _TileOutcome:
        rows, cols = tile.slices()
        tile_pixels = pixels[rows, cols]
        outcome = _TileOutcome(tile=tile)
        try:
            try:
                result = self._run_backend(tile_pixels, inference_pool)
            except BackendUnavailable as e:
                outcome.fallback_reason = str(e)
                result = self.fallback.classify(tile_pixels)
            outcome.categories, outcome.confidences = result
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
        return outcome

    def _run_backend(self, tile_pixels: NDArray[np.uint8], inference_pool: Executor | None) -> ClassificationResult:
        if inference_pool is None:
            return self.backend.classify(tile_pixels)
        if not self.backend.available:
            raise BackendUnavailable("no segmentation model loaded")
        future = inference_pool.submit(self.backend.classify, tile_pixels)
        try:
            return future.result(timeout=self.config.inference_timeout)
        except FutureTimeout:
            future.cancel()
            raise BackendUnavailable(f"inference timed out after {self.config.inference_timeout}s") from None

    def _merge_outcome(
        self,
        merger: TileMerger,
        outcome: _TileOutcome,
        failed: list[int],
        fallback: list[int],
        degradations: list[Degradation],
    ) -> None:
        tile = outcome.tile
        if outcome.fallback_reason:
            fallback.append(tile.index)
            degradations.append(Degradation("backend_unavailable", outcome.fallback_reason, tile.index))
            logger.warning("Tile %d: model backend unavailable (%s), used rules", tile.index, outcome.fallback_reason)

        error = outcome.error
        if not error:
            try:
                merger.merge(tile, outcome.categories, outcome.confidences)
            except TileProcessingFailure as e:
                error = str(e)
        if error:
            merger.write_failed(tile)
            failed.append(tile.index)
            degradations.append(Degradation("tile_processing_failure", error, tile.index))
            logger.warning("Tile %d failed, written as background: %s", tile.index, error)

    def extract(self, ctx: PipelineContext, cancel: CancellationToken | None = None) -> None:
        self._require(ctx, PipelineStage.MERGED, "extract")
        cfg = self.config
        result = extract_components(
            ctx.segmentation,
            self.table,
            min_element_pixels=cfg.min_element_pixels,
            max_pixels_per_component=cfg.max_pixels_per_component,
            max_components=cfg.max_components,
            seed_stride=cfg.seed_stride,
            check_cancelled=cancel.raise_if_cancelled if cancel is not None else None,
        )
        boundaries = result.boundaries
        if cfg.trace_contours:
            boundaries = with_contours(ctx.segmentation, boundaries)

        ctx.boundaries = boundaries
        ctx.truncated = result.truncated
        if result.truncated:
            ctx.degradations.append(
                Degradation(
                    "component_limit_exceeded",
                    f"{result.truncated_components} oversized components, "
                    f"{len(boundaries)}/{cfg.max_components} component slots used",
                )
            )
        ctx.stage = PipelineStage.COMPONENTS_EXTRACTED

    def annotate(self, ctx: PipelineContext, cancel: CancellationToken | None = None) -> None:
        self._require(ctx, PipelineStage.COMPONENTS_EXTRACTED, "annotate")
        cfg = self.config
        annotations = render_annotations(
            ctx.image.rgba(),
            ctx.segmentation,
            ctx.confidence,
            ctx.boundaries,
            self.table,
            cfg.confidence_thresholds,
            segmentation_alpha=cfg.segmentation_alpha,
            boundary_thickness=cfg.boundary_thickness,
            content_opacity=cfg.content_opacity,
            heatmap_opacity=cfg.heatmap_opacity,
        )
        ctx.layers = annotations.layers
        ctx.labels = annotations.labels
        ctx.composite = annotations.composite
        ctx.diagnostic = annotations.diagnostic
        ctx.stage = PipelineStage.COMPOSITED

    def report(self, ctx: PipelineContext, cancel: CancellationToken | None = None) -> None:
        self._require(ctx, PipelineStage.COMPOSITED, "report")
        ctx.statistics = compute_statistics(
            ctx.segmentation,
            ctx.confidence,
            ctx.boundaries,
            self.table,
            self.config.confidence_thresholds,
        )
        ctx.stage = PipelineStage.STATS_READY


def create_pipeline(
    config: PipelineConfig | None = None,
    model: SegmentationModel | None = None,
    outputs_logits: bool = False,
) -> Pipeline:
    """Factory: rule-based pipeline, or model-backed when a model is given."""
    config = (config or PipelineConfig()).validate()
    backend = create_backend(
        config.category_table,
        model=model,
        input_size=config.tile_size,
        outputs_logits=outputs_logits,
    )
    return Pipeline(config=config, backend=backend)
