"""Raster image ingestion: decode, orient, flatten alpha and bound size."""
import io
import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image
from PIL import ImageOps, UnidentifiedImageError

from pbnkit.types import IngestResult, InputError, PBNConfig

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, str, Path, np.ndarray]


def _flatten_to_rgb(img: Image.Image) -> Tuple[Image.Image, bool]:
    """Composite transparency on white and return an RGB image."""
    if img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info):
        rgba = img.convert('RGBA')
        background = Image.new('RGB', rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[3])
        return background, True
    if img.mode != 'RGB':
        return img.convert('RGB'), False
    return img, False


def _fit_within(img: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale so the longest side is at most max_dimension."""
    width, height = img.size
    longest = max(width, height)
    if longest <= max_dimension:
        return img

    scale = max_dimension / longest
    new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
    logger.info(f"Resizing {width}x{height} -> {new_size[0]}x{new_size[1]}")
    return img.resize(new_size, Image.Resampling.LANCZOS)


def _check_pixels(width: int, height: int, config: PBNConfig) -> None:
    if width < 1 or height < 1:
        raise InputError(f"Image has no pixels ({width}x{height})")
    if width * height > config.max_pixels:
        raise InputError(
            f"Image too large: {width}x{height} exceeds {config.max_pixels} pixels"
        )


def decode_image(
    data: Union[bytes, bytearray],
    config: Optional[PBNConfig] = None,
    source: str = "<bytes>"
) -> IngestResult:
    """
    Decode an encoded image (PNG, JPEG, ...) into a normalized RGB array.

    Args:
        data: Encoded image bytes
        config: Size limits (uses defaults if None)
        source: Name used in messages

    Returns:
        IngestResult with an (H, W, 3) uint8 image

    Raises:
        InputError: If the data is too large or cannot be decoded
    """
    config = config or PBNConfig()

    if len(data) == 0:
        raise InputError(f"Empty image data: {source}")
    if len(data) > config.max_file_bytes:
        raise InputError(
            f"Image file too large: {len(data)} bytes "
            f"(limit {config.max_file_bytes // (1024 * 1024)} MB)"
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            _check_pixels(img.width, img.height, config)
            img = ImageOps.exif_transpose(img)
            original_size = img.size
            img, has_alpha = _flatten_to_rgb(img)
            img = _fit_within(img, config.max_dimension)
            image = np.array(img, dtype=np.uint8)
    except InputError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise InputError(f"Failed to decode image {source}: {e}") from e

    height, width = image.shape[:2]
    logger.debug(f"Decoded {source}: {width}x{height} (alpha={has_alpha})")

    return IngestResult(
        image=image,
        width=width,
        height=height,
        original_size=original_size,
        has_alpha=has_alpha,
        source=source
    )


def ingest(path: Union[str, Path], config: Optional[PBNConfig] = None) -> IngestResult:
    """
    Ingest a raster image file.

    Raises:
        FileNotFoundError: If file doesn't exist
        InputError: If file cannot be loaded or violates the size limits
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    if not path.is_file():
        raise InputError(f"Path is not a file: {path}")

    config = config or PBNConfig()
    size = path.stat().st_size
    if size > config.max_file_bytes:
        raise InputError(
            f"Image file too large: {size} bytes "
            f"(limit {config.max_file_bytes // (1024 * 1024)} MB)"
        )

    return decode_image(path.read_bytes(), config, source=str(path))


def ingest_array(
    image: np.ndarray,
    config: Optional[PBNConfig] = None,
    source: str = "<array>"
) -> IngestResult:
    """
    Normalize an in-memory image array.

    Accepts grayscale (H, W), RGB (H, W, 3) or RGBA (H, W, 4) arrays, either
    uint8 in [0, 255] or float in [0, 1]. RGBA is composited on white.
    """
    config = config or PBNConfig()
    image = np.asarray(image)

    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)

    if image.ndim != 3:
        raise InputError(f"Expected 2D or 3D array, got {image.ndim}D")

    if image.shape[2] not in (3, 4):
        raise InputError(f"Expected 3 or 4 channels, got {image.shape[2]}")

    height, width = image.shape[:2]
    _check_pixels(width, height, config)

    if np.issubdtype(image.dtype, np.floating):
        if not np.isfinite(image).all():
            raise InputError("Image contains NaN or infinite values")
        image = image * 255.0 if image.max() <= 1.0 else image
    image = np.clip(image, 0, 255).astype(np.float64)

    has_alpha = image.shape[2] == 4
    if has_alpha:
        alpha = image[..., 3:4] / 255.0
        image = image[..., :3] * alpha + 255.0 * (1 - alpha)

    rgb = np.round(image).astype(np.uint8)

    if max(width, height) > config.max_dimension:
        img = _fit_within(Image.fromarray(rgb), config.max_dimension)
        rgb = np.array(img, dtype=np.uint8)

    return IngestResult(
        image=rgb,
        width=rgb.shape[1],
        height=rgb.shape[0],
        original_size=(width, height),
        has_alpha=has_alpha,
        source=source
    )


def load_image(source: ImageSource, config: Optional[PBNConfig] = None) -> IngestResult:
    """Dispatch on the source type: encoded bytes, a file path or an array."""
    if isinstance(source, np.ndarray):
        return ingest_array(source, config)
    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source), config)
    if isinstance(source, (str, Path)):
        return ingest(source, config)
    raise InputError(f"Unsupported image source type: {type(source).__name__}")
