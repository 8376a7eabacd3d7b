"""Tests for the pipeline orchestrator."""

import random
import threading
import time

import numpy as np
import pytest

from planseg.engine.categories import CategoryTable
from planseg.engine.classifier import ModelBackend, PixelClassifierBackend, RuleBasedBackend
from planseg.engine.config import PipelineConfig
from planseg.engine.context import PipelineContext, PipelineStage, RasterImage
from planseg.engine.pipeline import CancellationToken, Pipeline, create_pipeline
from planseg.engine.tiling import plan_tiles
from planseg.errors import InvalidConfiguration, PipelineCancelled, PipelineStateError


class _ConstantModel:
    """Predicts one class everywhere at a fixed probability."""

    def __init__(self, n_classes: int, winner: int, score: float = 0.9, delay: float = 0.0):
        self.n_classes = n_classes
        self.winner = winner
        self.score = score
        self.delay = delay

    def predict(self, batch):
        if self.delay:
            time.sleep(self.delay)
        n, h, w, _ = batch.shape
        out = np.full((n, h, w, self.n_classes), (1.0 - self.score) / (self.n_classes - 1), dtype=np.float32)
        out[..., self.winner] = self.score
        return out


class _NarrowTilesFail(RuleBasedBackend):
    """Raises on tiles narrower than four pixels (the clipped right-hand column)."""

    def classify(self, pixels):
        if pixels.shape[1] < 4:
            raise RuntimeError("classifier crashed")
        return super().classify(pixels)


class _NarrowTilesMisshapen(RuleBasedBackend):
    def classify(self, pixels):
        cats, confs = super().classify(pixels)
        if pixels.shape[1] < 4:
            return cats[:, :1], confs[:, :1]
        return cats, confs


def _check_buffers(ctx: PipelineContext, n_categories: int) -> None:
    assert ctx.segmentation.shape == (ctx.height, ctx.width)
    assert ctx.confidence.shape == (ctx.height, ctx.width)
    assert int(ctx.segmentation.max()) < n_categories
    assert float(ctx.confidence.min()) >= 0.0
    assert float(ctx.confidence.max()) <= 1.0
    total = sum(s.pixels for s in ctx.statistics.category_distribution.values())
    assert total == ctx.width * ctx.height


def test_blank_page_is_all_background(blank_page):
    ctx = create_pipeline().run(blank_page)

    assert ctx.stage == PipelineStage.STATS_READY
    assert np.all(ctx.segmentation == 0)
    assert ctx.boundaries == []
    assert ctx.statistics.average_confidence >= 0.95
    assert list(ctx.statistics.category_distribution) == ["background"]
    assert ctx.labels == []
    assert not ctx.degraded
    assert not ctx.truncated


def test_single_wall_square(wall_square):
    ctx = create_pipeline().run(wall_square)

    assert len(ctx.boundaries) == 1
    b = ctx.boundaries[0]
    assert CategoryTable.default()[b.category].name == "wall_load_bearing"
    for got, want in zip(b.bbox, (15, 15, 34, 34)):
        assert abs(got - want) <= 1
    assert 390 <= b.pixel_count <= 400
    assert ctx.labels[0].text == "wall load bearing"
    assert ctx.statistics.largest_element.category == "wall_load_bearing"


def test_wall_square_across_many_tiles(wall_square, small_tiles):
    ctx = Pipeline(small_tiles).run(wall_square)

    assert len(ctx.tiles) == 9
    assert ctx.grid_shape == (3, 3)
    assert len(ctx.boundaries) == 1
    assert ctx.boundaries[0].bbox == (15, 15, 34, 34)
    assert ctx.boundaries[0].pixel_count == 400
    _check_buffers(ctx, len(small_tiles.category_table))


def test_invariants_on_noisy_image(small_tiles):
    rng = np.random.default_rng(5)
    image = rng.integers(0, 256, size=(70, 90, 3), dtype=np.uint8)
    pipeline = Pipeline(small_tiles)
    ctx = pipeline.run(image)

    _check_buffers(ctx, len(small_tiles.category_table))
    assert len(ctx.boundaries) <= small_tiles.max_components
    assert all(b.pixel_count <= small_tiles.max_pixels_per_component for b in ctx.boundaries)
    stats = ctx.statistics
    bands = stats.high_confidence_pixels + stats.medium_confidence_pixels
    bands += stats.low_confidence_pixels + stats.unclear_pixels
    assert bands == 70 * 90


def test_runs_are_repeatable(two_walls, small_tiles):
    pipeline = Pipeline(small_tiles)
    a = pipeline.run(two_walls)
    b = pipeline.run(two_walls)

    assert np.array_equal(a.segmentation, b.segmentation)
    assert np.array_equal(a.confidence, b.confidence)
    assert a.boundaries == b.boundaries
    assert np.array_equal(a.composite, b.composite)
    assert len(a.boundaries) == 2


def test_outputs_and_metadata(two_walls, small_tiles):
    pipeline = Pipeline(small_tiles)
    ctx = pipeline.run(two_walls)
    meta = pipeline.metadata(ctx)

    assert meta["dimensions"] == {"width": 80, "height": 40, "total_pixels": 3200}
    assert meta["element_count"] == 2
    assert meta["layers"] == ["segmentation", "boundaries", "labels", "confidence"]
    assert meta["categories"][0] == "background"
    assert meta["degraded"] is False
    assert meta["truncated"] is False
    assert meta["backend"] == "rules"
    assert meta["stage"] == "STATS_READY"
    assert ctx.composite.shape == (40, 80, 4)
    assert ctx.diagnostic.shape == (40, 80, 4)
    assert set(ctx.timings_ms) == {"plan_tiles", "classify", "extract_components", "annotate", "statistics"}


def test_rgba_input_accepted(wall_square):
    rgba = np.concatenate([wall_square, np.full((50, 50, 1), 255, dtype=np.uint8)], axis=2)
    ctx = create_pipeline().run(RasterImage(rgba))
    assert len(ctx.boundaries) == 1


def test_contour_tracing(wall_square):
    ctx = create_pipeline(PipelineConfig(trace_contours=True)).run(wall_square)
    assert len(ctx.boundaries[0].contour) >= 4


def test_component_cap_degrades_instead_of_failing(small_tiles):
    image = np.full((40, 40, 3), 255, dtype=np.uint8)
    for x in range(0, 40, 4):
        image[5:35, x : x + 2] = 0
    small_tiles.max_components = 3
    ctx = Pipeline(small_tiles).run(image)

    assert ctx.stage == PipelineStage.STATS_READY
    assert ctx.truncated
    assert len(ctx.boundaries) == 3
    assert any(d.kind == "component_limit_exceeded" for d in ctx.degradations)


class TestDegradedClassification:
    def test_missing_model_falls_back_to_rules(self, wall_square, small_tiles):
        backend = ModelBackend(None, small_tiles.category_table, input_size=small_tiles.tile_size)
        ctx = Pipeline(small_tiles, backend=backend).run(wall_square)

        assert ctx.fallback_tiles == list(range(9))
        assert ctx.failed_tiles == []
        assert ctx.degraded
        assert {d.kind for d in ctx.degradations} == {"backend_unavailable"}
        assert len(ctx.boundaries) == 1

        rules = Pipeline(small_tiles).run(wall_square)
        assert np.array_equal(ctx.segmentation, rules.segmentation)

    def test_slow_model_times_out_per_tile(self, wall_square):
        table = CategoryTable.default()
        model = _ConstantModel(len(table), winner=1, delay=0.5)
        config = PipelineConfig(inference_timeout=0.05)
        ctx = create_pipeline(config, model=model).run(wall_square[:20, :20])

        assert ctx.fallback_tiles == [0]
        assert ctx.stage == PipelineStage.STATS_READY
        assert "timed out" in ctx.degradations[0].message

    def test_failing_tiles_written_as_background(self, wall_square, small_tiles):
        backend = _NarrowTilesFail(small_tiles.category_table)
        ctx = Pipeline(small_tiles, backend=backend).run(wall_square)

        assert ctx.failed_tiles == [2, 5, 8]
        assert ctx.degraded
        assert all(d.kind == "tile_processing_failure" for d in ctx.degradations)
        assert ctx.stage == PipelineStage.STATS_READY
        # The square lies in tiles that succeeded.
        assert len(ctx.boundaries) == 1

    def test_misshapen_tile_result_is_a_tile_failure(self, wall_square, small_tiles):
        backend = _NarrowTilesMisshapen(small_tiles.category_table)
        ctx = Pipeline(small_tiles, backend=backend).run(wall_square)
        assert ctx.failed_tiles == [2, 5, 8]


def test_model_backend(wall_square, small_tiles):
    model = _ConstantModel(len(small_tiles.category_table), winner=1, score=0.9)
    ctx = create_pipeline(small_tiles, model=model).run(wall_square)

    assert ctx.backend == "model"
    assert np.all(ctx.segmentation == 1)
    assert len(ctx.boundaries) == 1
    assert ctx.boundaries[0].pixel_count == 2500
    assert not ctx.degraded


def test_model_input_smaller_than_tile_rejected(small_tiles):
    backend = ModelBackend(_ConstantModel(len(small_tiles.category_table), winner=1), small_tiles.category_table, 16)
    with pytest.raises(InvalidConfiguration, match="exceeds model input size"):
        Pipeline(small_tiles, backend=backend)


class _JitteredTileBackend(PixelClassifierBackend):
    """Labels a whole tile with the code stored in its top-left pixel, at a fixed confidence.

    Each call sleeps a random interval so workers finish out of order.
    """

    name = "jittered"

    def __init__(self, seed: int):
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def classify(self, pixels):
        with self._lock:
            delay = self._rng.uniform(0.0, 0.01)
        time.sleep(delay)
        h, w = pixels.shape[:2]
        cats = np.full((h, w), int(pixels[0, 0, 0]), dtype=np.uint16)
        confs = np.full((h, w), 0.8, dtype=np.float32)
        return cats, confs


def test_equal_confidence_overlaps_owned_by_lower_tile(small_tiles):
    small_tiles.max_concurrent_tiles = 4
    tiles = plan_tiles(70, 70, small_tiles.tile_size, small_tiles.tile_overlap)
    image = np.full((70, 70, 3), 255, dtype=np.uint8)
    for tile in tiles:
        image[tile.origin_y, tile.origin_x] = tile.index + 1

    expected = np.zeros((70, 70), dtype=np.uint16)
    for tile in reversed(tiles):
        rows, cols = tile.slices()
        expected[rows, cols] = tile.index + 1

    for seed in range(4):
        ctx = Pipeline(small_tiles, backend=_JitteredTileBackend(seed)).run(image)
        assert np.array_equal(ctx.segmentation, expected)


def test_cancellation(wall_square, small_tiles):
    token = CancellationToken()
    token.cancel()
    ctx = PipelineContext(image=RasterImage.from_array(wall_square))

    with pytest.raises(PipelineCancelled):
        Pipeline(small_tiles).run(ctx, cancel=token)
    assert ctx.stage == PipelineStage.FAILED
    assert ctx.failure.stage == PipelineStage.CLASSIFYING
    assert ctx.segmentation is None


def test_invalid_config_rejected_before_running():
    with pytest.raises(InvalidConfiguration):
        Pipeline(PipelineConfig(tile_size=16, tile_overlap=16))


class TestStageOrder:
    def test_stage_before_inputs(self, wall_square):
        pipeline = create_pipeline()
        ctx = PipelineContext(image=RasterImage.from_array(wall_square))
        with pytest.raises(PipelineStateError):
            pipeline.extract(ctx)
        assert ctx.stage == PipelineStage.IDLE

    def test_stepwise(self, wall_square):
        pipeline = create_pipeline()
        ctx = PipelineContext(image=RasterImage.from_array(wall_square))
        pipeline.plan(ctx)
        assert ctx.stage == PipelineStage.TILES_PLANNED
        pipeline.classify(ctx)
        assert ctx.stage == PipelineStage.MERGED
        pipeline.extract(ctx)
        assert ctx.stage == PipelineStage.COMPONENTS_EXTRACTED
        pipeline.annotate(ctx)
        assert ctx.stage == PipelineStage.COMPOSITED
        pipeline.report(ctx)
        assert ctx.stage == PipelineStage.STATS_READY

    def test_rerun_of_finished_context(self, wall_square):
        pipeline = create_pipeline()
        ctx = pipeline.run(wall_square)
        with pytest.raises(PipelineStateError):
            pipeline.run(ctx)
        assert ctx.stage == PipelineStage.STATS_READY


def test_streaming_progress(wall_square):
    stream = create_pipeline().run_streaming(wall_square)
    events = []
    while True:
        try:
            events.append(next(stream))
        except StopIteration as stop:
            ctx = stop.value
            break

    assert [e["stage"] for e in events if e["status"] == "ok"] == [
        "plan_tiles",
        "classify",
        "extract_components",
        "annotate",
        "statistics",
    ]
    assert ctx.stage == PipelineStage.STATS_READY


class TestRasterImage:
    def test_from_bytes(self):
        data = bytes([255, 255, 255, 255] * 6)
        image = RasterImage.from_bytes(3, 2, data)
        assert (image.width, image.height) == (3, 2)
        assert image.rgba().shape == (2, 3, 4)

    def test_from_bytes_wrong_length(self):
        with pytest.raises(InvalidConfiguration):
            RasterImage.from_bytes(3, 2, bytes(10))

    def test_grayscale_array_expanded(self):
        image = RasterImage.from_array(np.zeros((4, 5), dtype=np.uint8))
        assert image.pixels.shape == (4, 5, 3)
        assert image.rgba()[..., 3].min() == 255

    def test_bad_shape(self):
        with pytest.raises(InvalidConfiguration):
            RasterImage(np.zeros((4, 5, 2), dtype=np.uint8))

    def test_float_array_rejected(self):
        with pytest.raises(InvalidConfiguration, match="float64"):
            RasterImage.from_array(np.ones((4, 5, 3)))

    def test_wide_int_array_rejected(self):
        with pytest.raises(InvalidConfiguration):
            RasterImage.from_array(np.full((4, 5, 3), 300, dtype=np.int32))
