"""Tests for size-based zone merging."""
import numpy as np
import pytest

from pbnkit.region_merger import four_neighbors, merge_small_zones, zone_perimeters
from pbnkit.types import InputError
from pbnkit.zone_labeler import label_zones


class TestZonePerimeters:
    def test_square_inside_background(self):
        labels = np.zeros((6, 6), dtype=np.int32)
        labels[2:4, 2:4] = 1

        perimeters = zone_perimeters(labels)

        assert perimeters[1] == 8
        # 24 image-border edges plus 8 around the square
        assert perimeters[0] == 32

    def test_four_neighbors_respects_bounds(self):
        neighbors = four_neighbors(np.array([0]), width=3, height=3)
        assert sorted(neighbors.tolist()) == [1, 3]


class TestMergeSmallZones:
    """Test absorption of small zones."""

    def test_speck_absorbed(self, palette, labeled_islands):
        labels, zones = labeled_islands

        new_labels, new_zones = merge_small_zones(zones, labels, palette, min_region_size=5)

        assert [z.id for z in new_zones] == [0, 1]
        assert new_labels[22, 22] == 0
        assert new_zones[0].area == 900 - 144
        assert new_zones[0].color_idx == 0

    def test_input_not_modified(self, palette, labeled_islands):
        labels, zones = labeled_islands
        before = labels.copy()

        merge_small_zones(zones, labels, palette, min_region_size=200)

        np.testing.assert_array_equal(labels, before)

    def test_zone_count_never_increases(self, palette):
        rng = np.random.default_rng(3)
        color_map = rng.integers(0, 4, size=(20, 20)).astype(np.int32)
        labels, zones = label_zones(color_map)

        for threshold in (2, 5, 20):
            new_labels, new_zones = merge_small_zones(zones, labels, palette, threshold)
            assert len(new_zones) <= len(zones)
            assert sum(z.area for z in new_zones) == labels.size
            assert set(np.unique(new_labels).tolist()) == {z.id for z in new_zones}

    def test_prefers_perceptually_closer_neighbor(self, palette):
        """A red speck between blue and near-red zones joins the near-red one."""
        color_map = np.ones((6, 9), dtype=np.int32)
        color_map[:, 5:] = 2
        color_map[2:4, 4] = 0
        labels, zones = label_zones(color_map)
        speck = labels[2, 4]
        near_red = labels[0, 8]

        new_labels, new_zones = merge_small_zones(zones, labels, palette, min_region_size=3)

        assert new_labels[2, 4] == near_red
        assert speck not in {z.id for z in new_zones}

    def test_threshold_of_one_is_noop(self, palette, labeled_islands):
        labels, zones = labeled_islands
        new_labels, new_zones = merge_small_zones(zones, labels, palette, min_region_size=1)
        assert new_zones is zones
        assert new_labels is labels

    def test_negative_threshold(self, palette, labeled_islands):
        labels, zones = labeled_islands
        with pytest.raises(InputError):
            merge_small_zones(zones, labels, palette, min_region_size=-1)
