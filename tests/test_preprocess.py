from __future__ import annotations

import io
import unittest

import numpy as np
import pytest
from PIL import Image

from oncoscan.ai.preprocess import decode_image, resize_nearest
from oncoscan.errors import ImageDecodeError


def _encode(fmt: str, size=(64, 48), color=(200, 30, 30), mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class ResizeNearestTests(unittest.TestCase):
    def test_downsample_takes_floor_indices(self) -> None:
        pixels = np.arange(16).reshape(4, 4)
        resized = resize_nearest(pixels, (2, 2))
        np.testing.assert_array_equal(resized, [[0, 2], [8, 10]])

    def test_upsample_repeats_source_rows(self) -> None:
        pixels = np.array([[1, 2], [3, 4]])
        resized = resize_nearest(pixels, (4, 4))
        np.testing.assert_array_equal(
            resized,
            [[1, 1, 2, 2], [1, 1, 2, 2], [3, 3, 4, 4], [3, 3, 4, 4]],
        )

    def test_non_integer_ratio_never_indexes_past_the_edge(self) -> None:
        pixels = np.arange(3).reshape(1, 3)
        resized = resize_nearest(pixels, (1, 2))
        np.testing.assert_array_equal(resized, [[0, 1]])

    def test_channels_are_preserved(self) -> None:
        pixels = np.zeros((5, 7, 3), dtype=np.uint8)
        self.assertEqual(resize_nearest(pixels, (224, 224)).shape, (224, 224, 3))


def test_decode_jpeg_produces_batched_float_tensor() -> None:
    tensor = decode_image(_encode("JPEG"))

    assert tensor.shape == (1, 224, 224, 3)
    assert tensor.dtype == np.float32
    # Raw 0-255 pixel values, no normalisation.
    assert tensor.max() > 100.0
    assert tensor.max() <= 255.0


def test_decode_grayscale_jpeg_is_expanded_to_rgb() -> None:
    tensor = decode_image(_encode("JPEG", color=128, mode="L"))
    assert tensor.shape == (1, 224, 224, 3)


def test_decode_rejects_png() -> None:
    with pytest.raises(ImageDecodeError):
        decode_image(_encode("PNG"))


def test_decode_rejects_garbage_bytes() -> None:
    with pytest.raises(ImageDecodeError):
        decode_image(b"definitely not an image")


def test_decode_rejects_empty_payload() -> None:
    with pytest.raises(ImageDecodeError):
        decode_image(b"")


def test_decode_rejects_truncated_jpeg() -> None:
    noise = np.random.default_rng(7).integers(0, 256, size=(128, 128, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(noise).save(buffer, format="JPEG")
    data = buffer.getvalue()
    with pytest.raises(ImageDecodeError):
        decode_image(data[: len(data) * 2 // 3])


def test_decode_accepts_multi_picture_jpeg() -> None:
    primary = Image.new("RGB", (64, 48), (250, 250, 250))
    secondary = Image.new("RGB", (64, 48), (5, 5, 5))
    buffer = io.BytesIO()
    primary.save(buffer, format="MPO", save_all=True, append_images=[secondary])
    data = buffer.getvalue()
    assert data[:2] == b"\xff\xd8"

    tensor = decode_image(data)

    assert tensor.shape == (1, 224, 224, 3)
    # First frame is the primary (bright) picture.
    assert tensor.mean() > 200.0
