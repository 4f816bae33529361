"""Painterly effects applied to the preview raster."""
import logging
from typing import Callable, Dict, Optional

import numpy as np
from PIL import Image, ImageFilter
from scipy import ndimage

from pbnkit.types import InputError

logger = logging.getLogger(__name__)

EFFECTS = ('none', 'watercolor', 'brush', 'oil', 'pencil')

# Gradient magnitude at which a pixel counts as a full edge
WATERCOLOR_EDGE_THRESHOLD = 50.0
MAX_BLUR_RADIUS = 5
MAX_STROKE_LENGTH = 8
MAX_STROKE_OPACITY = 0.6
MAX_OIL_RADIUS = 5
# Oil colors are grouped on a grid of this step per channel
OIL_COLOR_STEP = 8
MAX_CANVAS_TEXTURE = 0.15
PENCIL_HATCH_BELOW = 180
PENCIL_HATCH_DARKEN = 50


def _gray(image: np.ndarray) -> np.ndarray:
    """Mean of the RGB channels as float64."""
    return image[..., :3].astype(np.float64).mean(axis=2)


def _luminance(image: np.ndarray) -> np.ndarray:
    rgb = image[..., :3].astype(np.float64)
    return np.round(0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2])


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """Gradient magnitude of a 2D array from the 3x3 Sobel kernels."""
    gx = ndimage.sobel(gray, axis=1, mode='nearest')
    gy = ndimage.sobel(gray, axis=0, mode='nearest')
    return np.hypot(gx, gy)


def watercolor(image: np.ndarray, intensity: float) -> np.ndarray:
    """
    Gaussian blur that fades out near edges.

    The blur radius grows with intensity up to MAX_BLUR_RADIUS pixels. Each
    pixel mixes the blurred and original colors; strong Sobel edges keep
    the original so zone outlines stay readable.
    """
    radius = int(round(intensity / 100 * MAX_BLUR_RADIUS))
    if radius == 0:
        return image.copy()

    source = image.astype(np.float64)
    blurred = ndimage.gaussian_filter(source, sigma=(radius / 3, radius / 3, 0), mode='nearest')

    edge_weight = np.minimum(1.0, sobel_magnitude(_gray(image)) / WATERCOLOR_EDGE_THRESHOLD)
    blur_weight = ((1.0 - edge_weight) * (intensity / 100))[..., np.newaxis]

    out = blurred * blur_weight + source * (1.0 - blur_weight)
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def _stroke_kernel(length: int) -> np.ndarray:
    """Diagonal stroke footprint: offsets (i, floor(i / 2)) for |i| <= length."""
    half_y = -(-length // 2)
    kernel = np.zeros((2 * half_y + 1, 2 * length + 1))
    for i in range(-length, length + 1):
        kernel[i // 2 + half_y, i + length] = 1.0
    return kernel


def brush(image: np.ndarray, intensity: float) -> np.ndarray:
    """
    Directional stroke texture.

    Every pixel is blended with the mean color along a short diagonal
    stroke through it. Samples falling outside the image are skipped.
    """
    length = max(2, int(round(intensity / 100 * MAX_STROKE_LENGTH)))
    opacity = intensity / 100 * MAX_STROKE_OPACITY
    kernel = _stroke_kernel(length)

    source = image.astype(np.float64)
    counts = ndimage.correlate(np.ones(image.shape[:2]), kernel, mode='constant', cval=0.0)
    stroked = np.empty_like(source)
    for channel in range(source.shape[2]):
        total = ndimage.correlate(source[..., channel], kernel, mode='constant', cval=0.0)
        stroked[..., channel] = total / counts

    out = source * (1 - opacity) + stroked * opacity
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def oil(image: np.ndarray, intensity: float, seed: Optional[int] = 0) -> np.ndarray:
    """
    Thick strokes from the locally dominant color plus a canvas texture.

    Colors are snapped to an OIL_COLOR_STEP grid, then each channel takes
    its most frequent value in a square window (Pillow's ModeFilter).
    A random luminosity offset simulates canvas grain.

    Args:
        image: (H, W, 3) uint8
        intensity: 0-100
        seed: Seed for the texture noise (None for fresh noise)
    """
    radius = max(1, int(round(intensity / 100 * MAX_OIL_RADIUS)))
    texture_strength = intensity / 100 * MAX_CANVAS_TEXTURE

    snapped = np.clip(
        np.round(image.astype(np.float64) / OIL_COLOR_STEP) * OIL_COLOR_STEP, 0, 255
    ).astype(np.uint8)
    painted = Image.fromarray(snapped).filter(ImageFilter.ModeFilter(size=2 * radius + 1))
    dominant = np.asarray(painted, dtype=np.float64)

    rng = np.random.default_rng(seed)
    texture = (rng.random(image.shape[:2]) - 0.5) * texture_strength * 255
    out = dominant + texture[..., np.newaxis]
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def pencil(image: np.ndarray, intensity: float) -> np.ndarray:
    """Grayscale sketch: darkened edges plus 45 degree hatching in the shadows."""
    gray = _luminance(image)
    edges = np.minimum(255.0, sobel_magnitude(gray))

    spacing = max(2, int(round(8 - intensity / 100 * 6)))
    yy, xx = np.indices(gray.shape)
    hatch = ((xx + yy) % spacing == 0) & (gray < PENCIL_HATCH_BELOW)
    shaded = np.where(hatch, np.maximum(0.0, gray - PENCIL_HATCH_DARKEN), gray)

    value = np.round(shaded * (1 - edges / 255 * (intensity / 100)))
    value = np.clip(value, 0, 255).astype(np.uint8)
    return np.repeat(value[..., np.newaxis], 3, axis=2)


_EFFECTS: Dict[str, Callable[[np.ndarray, float], np.ndarray]] = {
    'watercolor': watercolor,
    'brush': brush,
    'oil': oil,
    'pencil': pencil,
}


def validate_effect(effect: Optional[str], intensity: float) -> None:
    """Raise InputError for an unknown effect or an intensity outside 0-100."""
    if effect is not None and effect not in EFFECTS:
        raise InputError(f"Unknown effect {effect!r}; expected one of {', '.join(EFFECTS)}")
    if not 0 <= intensity <= 100:
        raise InputError(f"effect intensity must be in [0, 100], got {intensity}")


def apply_effect(image: np.ndarray, effect: Optional[str], intensity: float = 50.0) -> np.ndarray:
    """
    Apply a named effect to an RGB raster.

    The input is never modified. With no effect ('none' or None) or zero
    intensity the input array itself is returned.

    Args:
        image: (H, W, 3) uint8 raster
        effect: One of EFFECTS, or None
        intensity: Effect strength, 0-100

    Returns:
        (H, W, 3) uint8 raster

    Raises:
        InputError: If the effect name or intensity is invalid
    """
    validate_effect(effect, intensity)
    if effect in (None, 'none') or intensity == 0:
        return image

    result = _EFFECTS[effect](image, float(intensity))
    logger.info(f"Applied {effect} effect at intensity {intensity:g}")
    return result
