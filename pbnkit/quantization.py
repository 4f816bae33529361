"""K-means palette quantization with k-means++ seeding."""
import logging
from typing import Optional, Tuple

import numpy as np
from sklearn.metrics import pairwise_distances_argmin

from pbnkit.types import InputError

logger = logging.getLogger(__name__)


class PaletteQuantizer:
    """
    Reduce an RGB image to a palette of at most num_colors colors.

    Clustering runs on a strided pixel sample with a fixed number of Lloyd
    iterations, so the result is deterministic for a given random_state.
    """

    def __init__(
        self,
        num_colors: int,
        iterations: int = 10,
        sample_step: int = 4,
        min_samples: int = 1024,
        random_state: Optional[int] = 42
    ):
        if num_colors < 1:
            raise InputError(f"num_colors must be >= 1, got {num_colors}")
        if iterations < 0:
            raise InputError(f"iterations must be >= 0, got {iterations}")
        if sample_step < 1:
            raise InputError(f"sample_step must be >= 1, got {sample_step}")

        self.num_colors = num_colors
        self.iterations = iterations
        self.sample_step = sample_step
        self.min_samples = min_samples
        self.random_state = random_state

    @staticmethod
    def _validate(image: np.ndarray) -> None:
        if not isinstance(image, np.ndarray):
            raise InputError("Input must be a numpy array")
        if image.ndim != 3 or image.shape[2] != 3:
            raise InputError(f"Input must be HxWx3 array, got shape {image.shape}")
        if image.shape[0] == 0 or image.shape[1] == 0:
            raise InputError("Input image is empty")

    def sample_pixels(self, image: np.ndarray) -> np.ndarray:
        """Every sample_step-th pixel in flat order, or all pixels if too few."""
        pixels = image.reshape(-1, 3).astype(np.float64)
        sampled = pixels[::self.sample_step]
        if len(sampled) < min(self.min_samples, len(pixels)):
            return pixels
        return sampled

    def seed_centroids(self, samples: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """
        Pick initial centroids with k-means++.

        The first centroid is a uniform draw. Each next one is drawn with
        probability proportional to the squared distance to its nearest
        chosen centroid. When every distance is zero, or the draw lands on
        an already chosen color, a uniform draw is used instead.
        """
        n = len(samples)
        centroids = np.empty((self.num_colors, 3), dtype=np.float64)
        centroids[0] = samples[rng.integers(n)]
        nearest_sq = np.sum((samples - centroids[0]) ** 2, axis=1)

        for k in range(1, self.num_colors):
            total = nearest_sq.sum()
            if total > 0:
                idx = rng.choice(n, p=nearest_sq / total)
                candidate = samples[idx]
                if np.any(np.all(centroids[:k] == candidate, axis=1)):
                    candidate = samples[rng.integers(n)]
            else:
                candidate = samples[rng.integers(n)]

            centroids[k] = candidate
            nearest_sq = np.minimum(nearest_sq, np.sum((samples - candidate) ** 2, axis=1))

        return centroids

    def fit(self, image: np.ndarray) -> np.ndarray:
        """
        Compute the palette for an image.

        Args:
            image: Input image as HxWx3 uint8 array

        Returns:
            (num_colors, 3) uint8 palette. Entries may repeat when the image
            has fewer distinct colors than num_colors.
        """
        self._validate(image)
        rng = np.random.default_rng(self.random_state)
        samples = self.sample_pixels(image)

        logger.info(
            f"Running k-means with {self.num_colors} colors on {len(samples)} samples"
        )
        centroids = self.seed_centroids(samples, rng)

        for _ in range(self.iterations):
            assignment = pairwise_distances_argmin(samples, centroids)
            counts = np.bincount(assignment, minlength=self.num_colors)
            sums = np.zeros_like(centroids)
            np.add.at(sums, assignment, samples)
            occupied = counts > 0
            # Empty clusters keep their previous centroid
            centroids[occupied] = sums[occupied] / counts[occupied, None]

        return np.clip(np.round(centroids), 0, 255).astype(np.uint8)

    @staticmethod
    def map_to_palette(image: np.ndarray, palette: np.ndarray) -> np.ndarray:
        """Assign each pixel the index of its nearest palette color (first on ties)."""
        h, w = image.shape[:2]
        pixels = image.reshape(-1, 3).astype(np.float64)
        indices = pairwise_distances_argmin(pixels, palette.astype(np.float64))
        return indices.astype(np.int32).reshape(h, w)

    def quantize(self, image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Fit a palette and map the image onto it. Returns (color_map, palette)."""
        palette = self.fit(image)
        color_map = self.map_to_palette(image, palette)
        used = len(np.unique(color_map))
        logger.info(f"Quantized to {len(palette)} palette entries ({used} in use)")
        return color_map, palette


def quantize_image(
    image: np.ndarray,
    num_colors: int,
    iterations: int = 10,
    sample_step: int = 4,
    random_state: Optional[int] = 42
) -> Tuple[np.ndarray, np.ndarray]:
    """Convenience wrapper around PaletteQuantizer.quantize."""
    quantizer = PaletteQuantizer(
        num_colors,
        iterations=iterations,
        sample_step=sample_step,
        random_state=random_state
    )
    return quantizer.quantize(image)
