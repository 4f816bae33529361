"""Whole-result cache keyed by an image fingerprint and processing parameters."""
import hashlib
import logging
from typing import Any, Optional

import numpy as np

from pbnkit.lru_cache import LRUCache
from pbnkit.types import ProcessedResult

logger = logging.getLogger(__name__)

# Pixels hashed per image
SAMPLE_PIXELS = 4096


def image_fingerprint(image: np.ndarray, sample_pixels: int = SAMPLE_PIXELS) -> str:
    """Fast BLAKE2 digest of the image shape and a strided pixel sample."""
    flat = np.ascontiguousarray(image).reshape(-1, image.shape[-1] if image.ndim == 3 else 1)
    stride = max(1, len(flat) // sample_pixels)
    sample = np.ascontiguousarray(flat[::stride])

    digest = hashlib.blake2b(digest_size=16)
    digest.update(repr((image.shape, str(image.dtype))).encode())
    digest.update(sample.tobytes())
    return digest.hexdigest()


class ProcessingCache:
    """
    LRU of complete ProcessedResult objects.

    Entries are only read or written around a complete run; a hit skips
    the pipeline entirely.
    """

    def __init__(self, max_size: int = 10, max_age: Optional[float] = 300.0):
        self._lru = LRUCache(max_size, max_age)

    @staticmethod
    def make_key(
        image: np.ndarray,
        num_colors: int,
        min_region_size: int,
        smoothness: int,
        *extra: Any
    ) -> str:
        params = (int(num_colors), int(min_region_size), int(smoothness)) + tuple(extra)
        return f"{image_fingerprint(image)}:{params!r}"

    def get(self, key: str) -> Optional[ProcessedResult]:
        result = self._lru.get(key)
        if result is not None:
            logger.info(f"Result cache hit ({key[:12]}...)")
        return result

    def put(self, key: str, result: ProcessedResult) -> None:
        self._lru.set(key, result)

    def cleanup(self) -> int:
        return self._lru.cleanup()

    def clear(self) -> None:
        self._lru.clear()

    def __len__(self) -> int:
        return len(self._lru)

    def __contains__(self, key: str) -> bool:
        return key in self._lru
