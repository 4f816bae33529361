"""Pytest configuration and fixtures."""
import numpy as np
import pytest

from pbnkit.zone_labeler import label_zones


PALETTE_RGB = np.array([
    [230, 40, 40],    # red
    [40, 40, 230],    # blue
    [235, 45, 45],    # near-red
    [250, 250, 250],  # white
], dtype=np.uint8)


@pytest.fixture
def palette():
    """Small palette with two perceptually close reds."""
    return PALETTE_RGB.copy()


@pytest.fixture
def checkerboard():
    """8x8 black/white checkerboard RGB image."""
    yy, xx = np.mgrid[0:8, 0:8]
    board = ((yy + xx) % 2).astype(np.uint8) * 255
    return np.stack([board] * 3, axis=-1)


@pytest.fixture
def two_band_image():
    """40x40 image: top half teal, bottom half cream."""
    img = np.zeros((40, 40, 3), dtype=np.uint8)
    img[:20, :] = [100, 150, 200]
    img[20:, :] = [250, 240, 230]
    return img


@pytest.fixture
def island_color_map():
    """30x30 color map: color 0 background, a 12x12 color-1 block, a 2x2 color-2 speck."""
    color_map = np.zeros((30, 30), dtype=np.int32)
    color_map[5:17, 5:17] = 1
    color_map[22:24, 22:24] = 2
    return color_map


@pytest.fixture
def labeled_islands(island_color_map):
    """(labels, zones) for island_color_map."""
    return label_zones(island_color_map)
