"""Tests for Lab conversion and CIEDE2000."""
import numpy as np
import pytest
from skimage import color as skcolor

from pbnkit.color_space import (
    ColorSpace,
    delta_e_2000,
    delta_e_2000_array,
    hex_to_rgb,
    rgb_array_to_lab,
    rgb_to_hex,
)
from pbnkit.lru_cache import LRUCache


# Reference pairs from Sharma, Wu and Dalal (2005)
SHARMA_PAIRS = [
    ((50.0, 2.6772, -79.7751), (50.0, 0.0, -82.7485), 2.0425),
    ((50.0, 0.0, 0.0), (50.0, -1.0, 2.0), 2.3669),
    ((50.0, 2.5, 0.0), (73.0, 25.0, -18.0), 27.1492),
    ((60.2574, -34.0099, 36.2677), (60.4626, -34.1751, 39.4387), 1.2644),
]


class TestLabConversion:
    """Test sRGB to Lab."""

    def test_white_and_black(self):
        space = ColorSpace()
        L, a, b = space.rgb_to_lab(255, 255, 255)
        assert L == pytest.approx(100.0, abs=0.05)
        assert a == pytest.approx(0.0, abs=0.05)
        assert b == pytest.approx(0.0, abs=0.05)

        assert space.rgb_to_lab(0, 0, 0) == pytest.approx((0.0, 0.0, 0.0), abs=1e-6)

    def test_matches_skimage(self):
        """Conversion agrees with scikit-image for saturated and mid colors."""
        rgb = np.array([
            [255, 0, 0], [0, 255, 0], [0, 0, 255],
            [128, 64, 32], [17, 200, 140], [90, 90, 90],
        ], dtype=np.uint8)

        ours = rgb_array_to_lab(rgb)
        reference = skcolor.rgb2lab(rgb[None, :, :].astype(np.float64) / 255.0)[0]

        np.testing.assert_allclose(ours, reference, atol=0.1)

    def test_channels_are_clamped(self):
        space = ColorSpace()
        assert space.rgb_to_lab(300, -20, 255.4) == space.rgb_to_lab(255, 0, 255)

    def test_conversion_is_cached(self):
        cache = LRUCache(10)
        space = ColorSpace(lab_cache=cache)

        first = space.rgb_to_lab(10, 20, 30)
        second = space.rgb_to_lab(10, 20, 30)

        assert first == second
        assert len(cache) == 1
        assert cache.stats()['hits'] == 1


class TestDeltaE2000:
    """Test the CIEDE2000 metric."""

    @pytest.mark.parametrize("lab1, lab2, expected", SHARMA_PAIRS)
    def test_reference_values(self, lab1, lab2, expected):
        assert delta_e_2000(lab1, lab2) == pytest.approx(expected, abs=1e-3)

    def test_identity_and_symmetry(self):
        space = ColorSpace()
        colors = [(230, 40, 40), (40, 40, 230), (128, 128, 128), (0, 0, 0)]
        for c1 in colors:
            assert space.perceptual_distance(c1, c1) == 0.0
            for c2 in colors:
                assert space.perceptual_distance(c1, c2) == pytest.approx(
                    space.perceptual_distance(c2, c1), abs=1e-9
                )

    def test_capped_at_100(self):
        dE = delta_e_2000_array(np.array([0.0, 0.0, 0.0]), np.array([100.0, 127.0, -127.0]))
        assert float(dE) <= 100.0

    def test_close_reds_are_close(self, palette):
        space = ColorSpace()
        matrix = space.delta_e_matrix(palette)

        assert matrix.shape == (4, 4)
        assert np.all(np.diag(matrix) == 0)
        np.testing.assert_array_equal(matrix, matrix.T)
        assert matrix[0, 2] < 3.0
        assert matrix[0, 1] > 30.0

    def test_empty_palette(self):
        assert ColorSpace().palette_to_lab(np.zeros((0, 3), dtype=np.uint8)).shape == (0, 3)


class TestHexHelpers:
    def test_round_trip(self):
        assert rgb_to_hex((255, 128, 0)) == '#ff8000'
        assert hex_to_rgb('#ff8000') == (255, 128, 0)

    def test_shorthand(self):
        assert hex_to_rgb('#fff') == (255, 255, 255)

    def test_invalid(self):
        with pytest.raises(ValueError):
            hex_to_rgb('#12345')
