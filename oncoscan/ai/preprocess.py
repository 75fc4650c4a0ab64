from __future__ import annotations

import io
import logging

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..errors import ImageDecodeError
from .types import INPUT_SIZE


logger = logging.getLogger(__name__)

# Pillow reports JPEGs with a multi-picture APP2 segment as MPO; the first
# frame is the primary image.
_JPEG_FORMATS = frozenset({"JPEG", "MPO"})


def resize_nearest(pixels: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    """Nearest-neighbour resize matching TensorFlow's default sampling.

    Source index is ``min(floor(dst * in / out), in - 1)`` on each axis
    (no corner alignment, no half-pixel centres). Pillow's NEAREST filter
    samples pixel centres and does not produce the same values.
    """
    out_h, out_w = size
    in_h, in_w = pixels.shape[:2]
    rows = np.minimum(
        np.floor(np.arange(out_h) * (in_h / out_h)).astype(np.int64), in_h - 1
    )
    cols = np.minimum(
        np.floor(np.arange(out_w) * (in_w / out_w)).astype(np.int64), in_w - 1
    )
    return pixels[rows[:, None], cols[None, :]]


def decode_image(image_bytes: bytes) -> np.ndarray:
    """Decode a JPEG upload into a ``(1, 224, 224, 3)`` float32 tensor."""
    if not image_bytes:
        raise ImageDecodeError("Image payload is empty")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.format not in _JPEG_FORMATS:
                raise ImageDecodeError(
                    f"Expected a JPEG image, got {img.format or 'unknown'}"
                )
            width, height = img.size
            if width <= 0 or height <= 0:
                raise ImageDecodeError(f"Degenerate image size {width}x{height}")
            pixels = np.asarray(img.convert("RGB"))
    except ImageDecodeError:
        raise
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        ValueError,
    ) as exc:
        raise ImageDecodeError(f"Failed to decode image: {exc}") from exc

    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise ImageDecodeError(f"Degenerate image array shape {pixels.shape}")

    resized = resize_nearest(pixels, INPUT_SIZE)
    tensor = np.expand_dims(resized, axis=0).astype(np.float32)
    logger.debug(
        "Decoded image source=%dx%d tensor_shape=%s",
        pixels.shape[1],
        pixels.shape[0],
        tensor.shape,
    )
    return tensor


__all__ = ["decode_image", "resize_nearest"]
