"""Image decode/encode at the package boundary (Pillow)."""

from __future__ import annotations

import base64
import binascii
import io
import logging

import numpy as np
from numpy.typing import NDArray
from PIL import Image, UnidentifiedImageError

from planseg.engine.context import RasterImage
from planseg.errors import ImageTooLarge, IOFailure

logger = logging.getLogger(__name__)


def decode_image(data: bytes, max_pixels: int | None = None) -> RasterImage:
    """Decode PNG/JPEG/... bytes into an RGBA RasterImage.

    The size is checked from the header, before any pixel data is decoded.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ImageTooLarge(f"image has {width * height} pixels, limit is {max_pixels}")
            pixels = np.array(img.convert("RGBA"), dtype=np.uint8)
    except Image.DecompressionBombError as e:
        raise ImageTooLarge(f"cannot decode image: {e}") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise IOFailure(f"cannot decode image: {e}") from e
    logger.debug("Decoded %dx%d image", pixels.shape[1], pixels.shape[0])
    return RasterImage(pixels)


def decode_base64_image(encoded: str, max_pixels: int | None = None) -> RasterImage:
    # Accept data URLs as well as bare base64.
    if encoded.startswith("data:"):
        _, _, encoded = encoded.partition(",")
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise IOFailure(f"invalid base64 image payload: {e}") from e
    return decode_image(raw, max_pixels=max_pixels)


def encode_png(pixels: NDArray[np.uint8]) -> bytes:
    """Encode an (H, W, 3|4) uint8 raster as PNG."""
    arr = np.asarray(pixels)
    if arr.dtype != np.uint8 or arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise IOFailure(f"cannot encode array of shape {arr.shape} and dtype {arr.dtype} as PNG")
    buf = io.BytesIO()
    try:
        Image.fromarray(np.ascontiguousarray(arr)).save(buf, format="PNG")
    except (OSError, ValueError) as e:
        raise IOFailure(f"PNG encode failed: {e}") from e
    return buf.getvalue()


def encode_png_base64(pixels: NDArray[np.uint8]) -> str:
    return base64.b64encode(encode_png(pixels)).decode("ascii")
