"""Shared test fixtures."""

from __future__ import annotations

import base64
import io

import numpy as np
import pytest
from PIL import Image

from planseg.engine.categories import CategoryTable
from planseg.engine.config import PipelineConfig


def white_image(width: int, height: int) -> np.ndarray:
    return np.full((height, width, 3), 255, dtype=np.uint8)


def png_base64(pixels: np.ndarray) -> str:
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def table() -> CategoryTable:
    return CategoryTable.default()


@pytest.fixture
def blank_page() -> np.ndarray:
    """100x100 white sheet."""
    return white_image(100, 100)


@pytest.fixture
def wall_square() -> np.ndarray:
    """50x50 white sheet with a solid black square spanning (15,15)-(34,34)."""
    img = white_image(50, 50)
    img[15:35, 15:35] = 0
    return img


@pytest.fixture
def two_walls() -> np.ndarray:
    """80x40 sheet with two separate black 12x12 blocks."""
    img = white_image(80, 40)
    img[5:17, 5:17] = 0
    img[20:32, 50:62] = 0
    return img


@pytest.fixture
def small_tiles() -> PipelineConfig:
    """Small tiles so test images span several of them."""
    return PipelineConfig(tile_size=32, tile_overlap=8, max_concurrent_tiles=3, min_element_pixels=10)


@pytest.fixture
def to_base64():
    """Encode an RGB/RGBA array as a base64 PNG string."""
    return png_base64
