"""Tests for the whole-result cache."""
import numpy as np

from pbnkit.cache import ProcessingCache, image_fingerprint


class TestImageFingerprint:
    def test_stable_and_sensitive(self, two_band_image):
        other = two_band_image.copy()
        other[0, 0] = [1, 2, 3]

        assert image_fingerprint(two_band_image) == image_fingerprint(two_band_image.copy())
        assert image_fingerprint(two_band_image) != image_fingerprint(other)

    def test_shape_is_part_of_digest(self):
        flat = np.zeros((4, 8, 3), dtype=np.uint8)
        assert image_fingerprint(flat) != image_fingerprint(flat.reshape(8, 4, 3))


class TestProcessingCache:
    """Test keying and eviction."""

    def test_key_includes_parameters(self, two_band_image):
        key_a = ProcessingCache.make_key(two_band_image, 8, 50, 2)
        key_b = ProcessingCache.make_key(two_band_image, 8, 50, 3)
        key_c = ProcessingCache.make_key(two_band_image, 8, 50, 2, 5.0, 50)

        assert len({key_a, key_b, key_c}) == 3
        assert key_a == ProcessingCache.make_key(two_band_image, 8, 50, 2)

    def test_put_get_and_eviction(self):
        cache = ProcessingCache(max_size=2)
        cache.put('a', 'result-a')
        cache.put('b', 'result-b')
        cache.put('c', 'result-c')

        assert len(cache) == 2
        assert 'a' not in cache
        assert cache.get('c') == 'result-c'
        assert cache.get('a') is None

    def test_clear(self):
        cache = ProcessingCache()
        cache.put('a', 'result')
        cache.clear()
        assert len(cache) == 0
