"""Per-pixel classification backends.

Two interchangeable implementations of PixelClassifierBackend:

- RuleBasedBackend: ordered (predicate -> category, confidence) rules on the
  RGB value, first match wins. Always available, deterministic.
- ModelBackend: arg-max over a segmentation model's per-pixel class
  distribution. Optional; raises BackendUnavailable without a model.

Both return two (h, w) arrays aligned with the tile's local coordinates:
uint16 category codes and float32 confidences in [0, 1].
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from numpy.typing import NDArray
from scipy.special import softmax

from planseg.engine.categories import BACKGROUND, UNCLEAR, CategoryTable
from planseg.errors import BackendUnavailable, TileProcessingFailure

logger = logging.getLogger(__name__)

ClassificationResult = tuple[NDArray[np.uint16], NDArray[np.float32]]


# ---------------------------------------------------------------------------
# Rule set
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PixelFeatures:
    """Channel values (int32, so differences cannot wrap) and ITU-R 601 luma."""

    r: NDArray[np.int32]
    g: NDArray[np.int32]
    b: NDArray[np.int32]
    gray: NDArray[np.float64]

    @classmethod
    def from_pixels(cls, pixels: NDArray[np.uint8]) -> PixelFeatures:
        rgb = np.asarray(pixels)[..., :3].astype(np.int32)
        r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
        return cls(r=r, g=g, b=b, gray=0.299 * r + 0.587 * g + 0.114 * b)

    def spread_below(self, limit: int) -> NDArray[np.bool_]:
        """Near-neutral test: |r-g| and |g-b| both under limit."""
        return (np.abs(self.r - self.g) < limit) & (np.abs(self.g - self.b) < limit)


Predicate = Callable[[PixelFeatures], NDArray[np.bool_]]


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    predicate: Predicate
    category: str
    confidence: float


def _near_white(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.gray > 250) & f.spread_below(5)


def _black(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.gray < 40) & f.spread_below(10)


def _dark_gray(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.gray > 40) & (f.gray < 100) & f.spread_below(15)


def _medium_gray(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.gray > 100) & (f.gray < 180) & f.spread_below(20)


def _light_gray(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.gray > 180) & (f.gray < 240) & f.spread_below(10)


def _blue(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.b > f.r) & (f.b > f.g) & (f.b - np.maximum(f.r, f.g) > 30)


def _red(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.r > f.g) & (f.r > f.b) & (f.r - np.maximum(f.g, f.b) > 30)


def _green(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.g > f.r) & (f.g > f.b) & (f.g - np.maximum(f.r, f.b) > 30)


def _brown(f: PixelFeatures) -> NDArray[np.bool_]:
    warmth = f.r - f.b
    return (f.r > f.g) & (f.g > f.b) & (warmth > 20) & (warmth < 100)


def _cyan(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.b > f.r) & (f.g > f.r) & (np.abs(f.b - f.g) < 30) & (f.b > 128)


def _magenta(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.r > f.b) & (f.b > f.g) & (np.abs(f.r - f.b) < 50) & (f.r > 128)


def _yellow(f: PixelFeatures) -> NDArray[np.bool_]:
    return (f.r > 200) & (f.g > 150) & (f.b < 100)


# Evaluated top to bottom; CAD drawings are mostly white paper and black ink,
# so the neutral rules come first.
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("near_white", _near_white, "background", 0.99),
    ClassificationRule("black", _black, "wall_load_bearing", 0.85),
    ClassificationRule("dark_gray", _dark_gray, "wall_load_bearing", 0.75),
    ClassificationRule("medium_gray", _medium_gray, "wall_non_load_bearing", 0.70),
    ClassificationRule("light_gray", _light_gray, "insulation", 0.60),
    ClassificationRule("blue", _blue, "dimension_line", 0.85),
    ClassificationRule("red", _red, "text_annotation", 0.70),
    ClassificationRule("green", _green, "opening", 0.60),
    ClassificationRule("brown", _brown, "drywall", 0.65),
    ClassificationRule("cyan", _cyan, "window", 0.70),
    ClassificationRule("magenta", _magenta, "door", 0.70),
    ClassificationRule("yellow", _yellow, "insulation", 0.65),
)

FALLBACK_CONFIDENCE = 0.30


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class PixelClassifierBackend(abc.ABC):
    """Converts a tile's raw pixels into per-pixel (category, confidence)."""

    name: str = "backend"

    @property
    def available(self) -> bool:
        return True

    @abc.abstractmethod
    def classify(self, pixels: NDArray[np.uint8]) -> ClassificationResult:
        """Classify an (h, w, 3|4) uint8 tile."""


@dataclass(frozen=True)
class _ResolvedRule:
    name: str
    predicate: Predicate
    code: int
    confidence: float


class RuleBasedBackend(PixelClassifierBackend):
    """Deterministic first-match color rules; total thanks to the fallback."""

    name = "rules"

    def __init__(
        self,
        table: CategoryTable,
        rules: Sequence[ClassificationRule] = DEFAULT_RULES,
        fallback_confidence: float = FALLBACK_CONFIDENCE,
    ) -> None:
        self.table = table
        self.rules: list[_ResolvedRule] = []
        for rule in rules:
            code = table.code_of(rule.category)
            if code is None:
                logger.warning("Dropping rule %s: category %r not in table", rule.name, rule.category)
                continue
            self.rules.append(_ResolvedRule(rule.name, rule.predicate, code, rule.confidence))

        unclear = table.code_of(UNCLEAR)
        self.fallback_code = unclear if unclear is not None else table.code_of(BACKGROUND)
        self.fallback_confidence = fallback_confidence

    def classify(self, pixels: NDArray[np.uint8]) -> ClassificationResult:
        features = PixelFeatures.from_pixels(pixels)
        shape = features.r.shape
        categories = np.full(shape, self.fallback_code, dtype=np.uint16)
        confidences = np.full(shape, self.fallback_confidence, dtype=np.float32)
        unassigned = np.ones(shape, dtype=bool)

        for rule in self.rules:
            hit = unassigned & rule.predicate(features)
            if hit.any():
                categories[hit] = rule.code
                confidences[hit] = rule.confidence
                unassigned &= ~hit
            if not unassigned.any():
                break

        return categories, confidences

    def classify_pixel(self, r: int, g: int, b: int) -> tuple[int, float]:
        """Scalar form of the rule cascade: (category code, confidence)."""
        features = PixelFeatures.from_pixels(np.array([r, g, b], dtype=np.uint8))
        for rule in self.rules:
            if bool(rule.predicate(features)):
                return rule.code, rule.confidence
        return self.fallback_code, self.fallback_confidence


class SegmentationModel(Protocol):
    """Anything with a Keras-style predict over NHWC float batches."""

    def predict(self, batch: NDArray[np.float32]) -> NDArray: ...


class ModelBackend(PixelClassifierBackend):
    """Arg-max over a segmentation model's per-pixel class distribution.

    The model sees fixed ``input_size`` x ``input_size`` RGB tiles scaled to
    [0, 1]; smaller tiles are padded with the background color. Output must
    be (1, input_size, input_size, n_classes) with n_classes <= len(table).
    """

    name = "model"

    def __init__(
        self,
        model: SegmentationModel | None,
        table: CategoryTable,
        input_size: int,
        outputs_logits: bool = False,
    ) -> None:
        self.model = model
        self.table = table
        self.input_size = input_size
        self.outputs_logits = outputs_logits
        self._pad_value = np.asarray(table.background.color, dtype=np.float32) / 255.0

    @property
    def available(self) -> bool:
        return self.model is not None

    def _prepare(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        size = self.input_size
        h, w = pixels.shape[:2]
        if h > size or w > size:
            raise TileProcessingFailure(f"tile {w}x{h} exceeds model input {size}x{size}")
        canvas = np.empty((size, size, 3), dtype=np.float32)
        canvas[...] = self._pad_value
        canvas[:h, :w] = pixels[..., :3].astype(np.float32) / 255.0
        return canvas[np.newaxis]

    def classify(self, pixels: NDArray[np.uint8]) -> ClassificationResult:
        if self.model is None:
            raise BackendUnavailable("no segmentation model loaded")

        h, w = pixels.shape[:2]
        output = np.asarray(self.model.predict(self._prepare(pixels)))
        size = self.input_size
        if output.ndim != 4 or output.shape[:3] != (1, size, size):
            raise TileProcessingFailure(f"unexpected model output shape {output.shape}")
        n_classes = output.shape[-1]
        if n_classes > len(self.table):
            raise TileProcessingFailure(
                f"model predicts {n_classes} classes, category table has {len(self.table)}"
            )

        probs = output[0, :h, :w, :].astype(np.float64)
        if self.outputs_logits:
            probs = softmax(probs, axis=-1)

        best = np.argmax(probs, axis=-1)
        confidences = np.take_along_axis(probs, best[..., np.newaxis], axis=-1)[..., 0]
        return best.astype(np.uint16), np.clip(confidences, 0.0, 1.0).astype(np.float32)


def create_backend(
    table: CategoryTable,
    model: SegmentationModel | None = None,
    input_size: int = 672,
    outputs_logits: bool = False,
) -> PixelClassifierBackend:
    """Pick the backend once: model-backed when a model is supplied, rules otherwise."""
    if model is not None:
        logger.info("Using model-backed classification (input %dx%d)", input_size, input_size)
        return ModelBackend(model, table, input_size, outputs_logits=outputs_logits)
    logger.info("Using rule-based classification")
    return RuleBasedBackend(table)
