"""Annotation layers and compositing.

Each concern gets its own RGBA raster (segmentation tint, element
outlines, text labels, confidence heatmap). The composite is a fold of
alpha-over across the visible content layers on top of the original image;
the heatmap is folded separately into a diagnostic view. Nothing here
mutates the segmentation/confidence buffers or the source image.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import reduce
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageDraw, ImageFont

from planseg.engine.categories import BACKGROUND, CategoryTable

if TYPE_CHECKING:
    from planseg.engine.components import ElementBoundary
    from planseg.engine.config import ConfidenceThresholds

logger = logging.getLogger(__name__)

SEGMENTATION = "segmentation"
BOUNDARIES = "boundaries"
LABELS = "labels"
CONFIDENCE = "confidence"

CONTENT_ORDER = (SEGMENTATION, BOUNDARIES, LABELS)
DIAGNOSTIC_ORDER = (CONFIDENCE,)

_OUTLINE_COLOR = (0, 0, 0, 255)
_LABEL_FILL = (0, 0, 0, 255)
_LABEL_STROKE = (255, 255, 255, 255)

# Heatmap band colors: green / yellow / orange / red.
_BAND_COLORS = {
    "high": (0, 255, 0),
    "medium": (255, 255, 0),
    "low": (255, 165, 0),
    "unclear": (255, 0, 0),
}
# Heatmap alpha at zero confidence; falls linearly to 0 at full confidence.
_HEATMAP_MAX_ALPHA = 64


@dataclass
class AnnotationLayer:
    """A named RGBA raster with its own storage."""

    name: str
    pixels: NDArray[np.uint8]
    visible: bool = True
    opacity: float = 1.0


@dataclass(frozen=True)
class LabelRecord:
    text: str
    x: int
    y: int
    category: str
    area: int
    dimensions: str


@dataclass
class Annotations:
    layers: dict[str, AnnotationLayer] = field(default_factory=dict)
    labels: list[LabelRecord] = field(default_factory=list)
    composite: NDArray[np.uint8] | None = None
    diagnostic: NDArray[np.uint8] | None = None


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------

def segmentation_layer(
    segmentation: NDArray[np.uint16],
    table: CategoryTable,
    alpha: int = 128,
) -> AnnotationLayer:
    """Category display color on every pixel at a fixed alpha."""
    h, w = segmentation.shape
    rgba = np.empty((h, w, 4), dtype=np.uint8)
    rgba[..., :3] = table.palette()[segmentation]
    rgba[..., 3] = alpha
    return AnnotationLayer(SEGMENTATION, rgba)


def boundary_layer(
    boundaries: Sequence[ElementBoundary],
    width: int,
    height: int,
    thickness: int = 2,
) -> AnnotationLayer:
    """Stroke each element's traced contour, or its bounding box without one."""
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    for b in boundaries:
        if len(b.contour) >= 2:
            points = list(b.contour)
            if points[0] != points[-1]:
                points.append(points[0])
            draw.line(points, fill=_OUTLINE_COLOR, width=thickness)
        else:
            draw.rectangle(b.bbox, outline=_OUTLINE_COLOR, width=thickness)
    return AnnotationLayer(BOUNDARIES, np.array(canvas, dtype=np.uint8))


def label_layer(
    boundaries: Sequence[ElementBoundary],
    table: CategoryTable,
    width: int,
    height: int,
) -> tuple[AnnotationLayer, list[LabelRecord]]:
    """Category name at each element centroid, black with a white halo."""
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    font = ImageFont.load_default()
    labels: list[LabelRecord] = []

    for b in boundaries:
        category = table[b.category]
        if category.name == BACKGROUND:
            continue
        x, y = int(round(b.centroid[0])), int(round(b.centroid[1]))
        draw.text(
            (x, y),
            category.label,
            fill=_LABEL_FILL,
            font=font,
            stroke_width=3,
            stroke_fill=_LABEL_STROKE,
        )
        labels.append(
            LabelRecord(
                text=category.label,
                x=x,
                y=y,
                category=category.name,
                area=b.pixel_count,
                dimensions=f"{b.width}x{b.height}px",
            )
        )
    return AnnotationLayer(LABELS, np.array(canvas, dtype=np.uint8)), labels


def confidence_bands(confidence: NDArray[np.float32], thresholds: ConfidenceThresholds) -> NDArray[np.uint8]:
    """Band index per pixel: 0 high, 1 medium, 2 low, 3 unclear.

    Thresholds are compared at float32, the precision confidences are stored at.
    """
    conf = np.asarray(confidence, dtype=np.float32)
    bands = np.full(conf.shape, 3, dtype=np.uint8)
    bands[conf >= np.float32(thresholds.low)] = 2
    bands[conf >= np.float32(thresholds.medium)] = 1
    bands[conf >= np.float32(thresholds.high)] = 0
    return bands


def heatmap_layer(confidence: NDArray[np.float32], thresholds: ConfidenceThresholds) -> AnnotationLayer:
    """Band color per pixel; weaker confidence is painted more opaque."""
    colors = np.array(
        [_BAND_COLORS["high"], _BAND_COLORS["medium"], _BAND_COLORS["low"], _BAND_COLORS["unclear"]],
        dtype=np.uint8,
    )
    h, w = confidence.shape
    rgba = np.empty((h, w, 4), dtype=np.uint8)
    rgba[..., :3] = colors[confidence_bands(confidence, thresholds)]
    conf = np.clip(confidence.astype(np.float64), 0.0, 1.0)
    rgba[..., 3] = np.floor(_HEATMAP_MAX_ALPHA * (1.0 - conf)).astype(np.uint8)
    return AnnotationLayer(CONFIDENCE, rgba)


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------

def alpha_over(dst: NDArray[np.float64], src: NDArray[np.uint8], opacity: float = 1.0) -> NDArray[np.float64]:
    """Porter-Duff source-over on straight (non-premultiplied) RGBA.

    ``dst`` is float RGBA in [0, 255]; returns a new array of the same form.
    """
    src_f = src.astype(np.float64)
    sa = (src_f[..., 3:4] / 255.0) * opacity
    da = dst[..., 3:4] / 255.0
    out_a = sa + da * (1.0 - sa)

    out = np.zeros_like(dst)
    weighted = src_f[..., :3] * sa + dst[..., :3] * da * (1.0 - sa)
    np.divide(weighted, out_a, out=out[..., :3], where=out_a > 0)
    out[..., 3:4] = out_a * 255.0
    return out


def composite_layers(
    base: NDArray[np.uint8],
    layers: Sequence[AnnotationLayer],
) -> NDArray[np.uint8]:
    """Fold alpha-over across the visible layers, bottom to top."""
    visible = [layer for layer in layers if layer.visible]
    folded = reduce(
        lambda acc, layer: alpha_over(acc, layer.pixels, layer.opacity),
        visible,
        base.astype(np.float64),
    )
    return np.clip(np.rint(folded), 0, 255).astype(np.uint8)


def render_annotations(
    image_rgba: NDArray[np.uint8],
    segmentation: NDArray[np.uint16],
    confidence: NDArray[np.float32],
    boundaries: Sequence[ElementBoundary],
    table: CategoryTable,
    thresholds: ConfidenceThresholds,
    *,
    segmentation_alpha: int = 128,
    boundary_thickness: int = 2,
    content_opacity: float = 0.7,
    heatmap_opacity: float = 0.3,
) -> Annotations:
    """Build all four layers, the content composite and the diagnostic view."""
    h, w = segmentation.shape
    seg = segmentation_layer(segmentation, table, segmentation_alpha)
    outlines = boundary_layer(boundaries, w, h, boundary_thickness)
    text, labels = label_layer(boundaries, table, w, h)
    heat = heatmap_layer(confidence, thresholds)

    for layer in (seg, outlines, text):
        layer.opacity = content_opacity
    heat.opacity = heatmap_opacity

    layers = {layer.name: layer for layer in (seg, outlines, text, heat)}
    annotations = Annotations(layers=layers, labels=labels)
    annotations.composite = composite_layers(image_rgba, [layers[n] for n in CONTENT_ORDER])
    annotations.diagnostic = composite_layers(image_rgba, [layers[n] for n in DIAGNOSTIC_ORDER])
    logger.debug("Rendered %d layers, %d labels", len(layers), len(labels))
    return annotations
