"""Tests for raster ingestion."""
import io
import tempfile
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from pbnkit.raster_ingest import decode_image, ingest, ingest_array, load_image
from pbnkit.types import InputError, PBNConfig


def _encode(image: Image.Image, fmt: str = 'PNG') -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


class TestDecodeImage:
    """Test decoding of encoded bytes."""

    def test_png_bytes(self):
        img = Image.new('RGB', (20, 10), (10, 200, 30))
        result = decode_image(_encode(img))

        assert result.image.shape == (10, 20, 3)
        assert result.image.dtype == np.uint8
        assert tuple(result.image[0, 0]) == (10, 200, 30)
        assert result.has_alpha is False
        assert not result.was_resized

    def test_transparent_pixels_become_white(self):
        img = Image.new('RGBA', (4, 4), (255, 0, 0, 0))
        img.putpixel((1, 1), (255, 0, 0, 255))
        result = decode_image(_encode(img))

        assert result.has_alpha is True
        assert tuple(result.image[0, 0]) == (255, 255, 255)
        assert tuple(result.image[1, 1]) == (255, 0, 0)

    def test_downscales_long_side(self):
        img = Image.new('RGB', (300, 150), (0, 0, 0))
        result = decode_image(_encode(img), PBNConfig(max_dimension=100))

        assert (result.width, result.height) == (100, 50)
        assert result.original_size == (300, 150)
        assert result.was_resized

    def test_garbage_bytes(self):
        with pytest.raises(InputError, match="decode"):
            decode_image(b"definitely not an image")

    def test_empty_bytes(self):
        with pytest.raises(InputError):
            decode_image(b"")

    def test_file_size_limit(self):
        img = Image.new('RGB', (32, 32), (1, 2, 3))
        data = _encode(img)
        with pytest.raises(InputError, match="too large"):
            decode_image(data, PBNConfig(max_file_bytes=len(data) - 1))

    def test_pixel_limit(self):
        img = Image.new('RGB', (64, 64), (1, 2, 3))
        with pytest.raises(InputError, match="too large"):
            decode_image(_encode(img), PBNConfig(max_pixels=1000))


class TestIngestPath:
    """Test file ingestion."""

    def test_png_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "test.png"
            Image.new('RGB', (12, 8), (50, 60, 70)).save(path)

            result = ingest(path)

            assert (result.width, result.height) == (12, 8)
            assert result.source == str(path)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            ingest("/nonexistent/path/image.png")

    def test_directory_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(InputError):
                ingest(tmpdir)


class TestIngestArray:
    """Test in-memory array normalization."""

    def test_grayscale(self):
        gray = np.full((5, 6), 128, dtype=np.uint8)
        result = ingest_array(gray)
        assert result.image.shape == (5, 6, 3)
        assert np.all(result.image == 128)

    def test_float_input(self):
        image = np.ones((3, 3, 3), dtype=np.float64) * 0.5
        result = ingest_array(image)
        assert np.all(result.image == 128)

    def test_rgba_composited_on_white(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., 0] = 255
        result = ingest_array(rgba)
        assert result.has_alpha is True
        assert np.all(result.image == 255)

    def test_nan_rejected(self):
        image = np.full((2, 2, 3), np.nan)
        with pytest.raises(InputError):
            ingest_array(image)

    def test_bad_channel_count(self):
        with pytest.raises(InputError):
            ingest_array(np.zeros((4, 4, 2), dtype=np.uint8))


class TestLoadImage:
    def test_dispatch(self, two_band_image):
        assert load_image(two_band_image).image.shape == (40, 40, 3)
        data = _encode(Image.fromarray(two_band_image))
        assert load_image(data).image.shape == (40, 40, 3)

    def test_unsupported_type(self):
        with pytest.raises(InputError):
            load_image(42)
