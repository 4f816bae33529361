"""Perceptual color conversion (sRGB -> CIE Lab) and CIEDE2000 distance."""
import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from pbnkit.lru_cache import LRUCache
from pbnkit.types import Lab, RGB

logger = logging.getLogger(__name__)

# sRGB (D65, 2 degree observer) to XYZ
XYZ_MATRIX = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041]
])

# D65 reference white, XYZ scaled to 100
REFERENCE_WHITE = np.array([95.047, 100.0, 108.883])

MAX_DELTA_E = 100.0


def _clamp_rgb(r: float, g: float, b: float) -> RGB:
    return tuple(int(round(min(255.0, max(0.0, float(c))))) for c in (r, g, b))


def rgb_array_to_lab(rgb: np.ndarray) -> np.ndarray:
    """
    Convert an array of 0-255 RGB values to CIE Lab.

    Args:
        rgb: Array with last dimension 3, values in [0, 255]

    Returns:
        Float array of the same shape holding (L, a, b)
    """
    rgb = np.clip(np.asarray(rgb, dtype=np.float64), 0, 255) / 255.0

    linear = np.where(rgb > 0.04045, ((rgb + 0.055) / 1.055) ** 2.4, rgb / 12.92)
    xyz = linear @ XYZ_MATRIX.T * 100.0
    xyz_normalized = xyz / REFERENCE_WHITE

    f_xyz = np.where(
        xyz_normalized > 0.008856,
        np.cbrt(xyz_normalized),
        7.787 * xyz_normalized + 16 / 116
    )

    L = 116 * f_xyz[..., 1] - 16
    a = 500 * (f_xyz[..., 0] - f_xyz[..., 1])
    b = 200 * (f_xyz[..., 1] - f_xyz[..., 2])

    return np.stack([L, a, b], axis=-1)


def delta_e_2000_array(lab1: np.ndarray, lab2: np.ndarray) -> np.ndarray:
    """
    Vectorized CIEDE2000 (kL = kC = kH = 1) over broadcastable Lab arrays.

    Hue angles of achromatic colors are taken as 0. The result is capped
    at 100.
    """
    lab1 = np.asarray(lab1, dtype=np.float64)
    lab2 = np.asarray(lab2, dtype=np.float64)
    L1, a1, b1 = lab1[..., 0], lab1[..., 1], lab1[..., 2]
    L2, a2, b2 = lab2[..., 0], lab2[..., 1], lab2[..., 2]

    C1 = np.hypot(a1, b1)
    C2 = np.hypot(a2, b2)
    Cbar = (C1 + C2) / 2
    Cbar7 = Cbar ** 7
    G = 0.5 * (1 - np.sqrt(Cbar7 / (Cbar7 + 25.0 ** 7)))

    a1_prime = a1 * (1 + G)
    a2_prime = a2 * (1 + G)
    C1_prime = np.hypot(a1_prime, b1)
    C2_prime = np.hypot(a2_prime, b2)

    # arctan2(0, 0) is 0, so degenerate hues never produce NaN
    h1_prime = np.degrees(np.arctan2(b1, a1_prime)) % 360
    h2_prime = np.degrees(np.arctan2(b2, a2_prime)) % 360

    chroma_product = C1_prime * C2_prime
    achromatic = chroma_product == 0
    h_diff = h2_prime - h1_prime

    dh = np.where(h_diff > 180, h_diff - 360, np.where(h_diff < -180, h_diff + 360, h_diff))
    dh = np.where(achromatic, 0.0, dh)

    dL = L2 - L1
    dC = C2_prime - C1_prime
    dH = 2 * np.sqrt(chroma_product) * np.sin(np.radians(dh / 2))

    Lbar_prime = (L1 + L2) / 2
    Cbar_prime = (C1_prime + C2_prime) / 2

    h_sum = h1_prime + h2_prime
    hbar_prime = np.where(
        np.abs(h_diff) <= 180,
        h_sum / 2,
        np.where(h_sum < 360, (h_sum + 360) / 2, (h_sum - 360) / 2)
    )
    hbar_prime = np.where(achromatic, h_sum, hbar_prime)

    T = (1 - 0.17 * np.cos(np.radians(hbar_prime - 30)) +
         0.24 * np.cos(np.radians(2 * hbar_prime)) +
         0.32 * np.cos(np.radians(3 * hbar_prime + 6)) -
         0.20 * np.cos(np.radians(4 * hbar_prime - 63)))

    SL = 1 + 0.015 * (Lbar_prime - 50) ** 2 / np.sqrt(20 + (Lbar_prime - 50) ** 2)
    SC = 1 + 0.045 * Cbar_prime
    SH = 1 + 0.015 * Cbar_prime * T

    Cbar_prime7 = Cbar_prime ** 7
    RC = 2 * np.sqrt(Cbar_prime7 / (Cbar_prime7 + 25.0 ** 7))
    d_theta = 30 * np.exp(-((hbar_prime - 275) / 25) ** 2)
    RT = -RC * np.sin(np.radians(2 * d_theta))

    dE = np.sqrt(np.maximum(
        (dL / SL) ** 2 + (dC / SC) ** 2 + (dH / SH) ** 2 + RT * (dC / SC) * (dH / SH),
        0.0
    ))

    return np.minimum(dE, MAX_DELTA_E)


def delta_e_2000(lab1: Sequence[float], lab2: Sequence[float]) -> float:
    """
    Calculate CIEDE2000 color difference between two Lab colors.

    Args:
        lab1: First Lab color (L, a, b)
        lab2: Second Lab color (L, a, b)

    Returns:
        Delta E 2000 value in [0, 100]
    """
    return float(delta_e_2000_array(lab1, lab2))


def rgb_to_hex(rgb: Sequence[int]) -> str:
    """Format an RGB triple (0-255) as #rrggbb."""
    r, g, b = _clamp_rgb(*rgb)
    return f"#{r:02x}{g:02x}{b:02x}"


def hex_to_rgb(value: str) -> RGB:
    """Parse #rgb or #rrggbb into an RGB triple."""
    value = value.lstrip('#')
    if len(value) == 3:
        value = ''.join(c * 2 for c in value)
    if len(value) != 6:
        raise ValueError(f"Invalid hex color: #{value}")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


class ColorSpace:
    """sRGB -> Lab conversion with a bounded memo, plus perceptual distance."""

    def __init__(self, lab_cache: Optional[LRUCache] = None):
        """
        Args:
            lab_cache: Cache for converted colors. Defaults to 1000 entries,
                ten minute expiry.
        """
        self.lab_cache = lab_cache if lab_cache is not None else LRUCache(1000, 600.0)

    def rgb_to_lab(self, r: float, g: float, b: float) -> Lab:
        """Convert one RGB color (channels clamped to 0-255 and rounded) to Lab."""
        key = _clamp_rgb(r, g, b)
        cached = self.lab_cache.get(key)
        if cached is not None:
            return cached

        lab = tuple(float(v) for v in rgb_array_to_lab(np.array(key)))
        self.lab_cache.set(key, lab)
        return lab

    def perceptual_distance(self, rgb1: Sequence[float], rgb2: Sequence[float]) -> float:
        """CIEDE2000 distance between two RGB colors."""
        return delta_e_2000(self.rgb_to_lab(*rgb1), self.rgb_to_lab(*rgb2))

    def palette_to_lab(self, palette: np.ndarray) -> np.ndarray:
        """Convert an (N, 3) RGB palette to an (N, 3) Lab array."""
        if len(palette) == 0:
            return np.zeros((0, 3))
        return np.array([self.rgb_to_lab(*c) for c in palette])

    def delta_e_matrix(self, palette: np.ndarray) -> np.ndarray:
        """Symmetric (N, N) matrix of pairwise CIEDE2000 distances."""
        lab = self.palette_to_lab(palette)
        matrix = delta_e_2000_array(lab[:, None, :], lab[None, :, :])
        # Enforce exact symmetry and a zero diagonal
        matrix = np.minimum(matrix, matrix.T)
        np.fill_diagonal(matrix, 0.0)
        return matrix
