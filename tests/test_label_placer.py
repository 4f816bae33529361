"""Tests for label placement."""
import numpy as np
import pytest
from shapely.errors import GEOSException

import pbnkit.label_placer as label_placer_module
from pbnkit import process_image
from pbnkit.contour_tracer import trace_contours
from pbnkit.label_placer import (
    clamp_point,
    continuity_label_position,
    grid_label_position,
    place_labels,
    pole_of_inaccessibility,
    seed_label_positions,
)
from pbnkit.types import Contour, GeometryWarning
from pbnkit.zone_labeler import label_zones


def _inside(labels, zone_id, point):
    h, w = labels.shape
    x, y = point
    return labels[min(int(y), h - 1), min(int(x), w - 1)] == zone_id


class TestPlaceLabels:
    """Test that every zone gets a point inside itself."""

    def test_every_zone_labeled_inside(self, labeled_islands):
        labels, zones = labeled_islands
        contours = trace_contours(zones, 30, 30)

        positions = place_labels(zones, contours, labels)

        assert set(positions) == {z.id for z in zones}
        for zone in zones:
            x, y = positions[zone.id]
            assert 0 <= x <= 30 and 0 <= y <= 30
            assert _inside(labels, zone.id, positions[zone.id])

    def test_block_label_near_center(self, labeled_islands):
        labels, zones = labeled_islands
        contours = trace_contours(zones, 30, 30)

        x, y = place_labels(zones, contours, labels)[1]

        assert x == pytest.approx(11.0, abs=1.0)
        assert y == pytest.approx(11.0, abs=1.0)

    def test_without_contours_uses_raster(self, labeled_islands):
        labels, zones = labeled_islands
        positions = place_labels(zones, [], labels)
        for zone in zones:
            assert _inside(labels, zone.id, positions[zone.id])

    def test_seed_used_when_polygon_point_outside(self):
        """A ring-shaped zone whose polygon pole lands in the hole."""
        color_map = np.ones((20, 20), dtype=np.int32)
        color_map[2:18, 2:18] = 0
        color_map[4:16, 4:16] = 1
        labels, zones = label_zones(color_map)
        ring_zone = labels[2, 2]
        # Polygon without the hole: its pole sits in the middle of the other zone
        fake = [Contour(
            zone_id=int(ring_zone),
            color_idx=0,
            path=np.array([[2, 2], [18, 2], [18, 18], [2, 18]], dtype=float)
        )]
        seeds = {int(ring_zone): (2.5, 2.5)}

        positions = place_labels(
            [z for z in zones if z.id == ring_zone], fake, labels, seeds=seeds
        )

        assert positions[int(ring_zone)] == (2.5, 2.5)


class TestHelpers:
    def test_clamp_point(self):
        assert clamp_point(-3, 50, 10, 20) == (0.0, 20.0)

    def test_pole_of_square(self):
        contour = Contour(
            zone_id=0, color_idx=0,
            path=np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        )
        x, y = pole_of_inaccessibility([contour])
        assert x == pytest.approx(5.0, abs=0.5)
        assert y == pytest.approx(5.0, abs=0.5)

    def test_pole_without_polygons(self):
        assert pole_of_inaccessibility([]) is None

    def test_grid_position_of_block(self, labeled_islands):
        labels, zones = labeled_islands
        point = grid_label_position(zones[1], 30, 30)
        assert _inside(labels, 1, point)
        assert point[0] == pytest.approx(10.5, abs=1.0)

    def test_continuity_position_of_thin_line(self):
        color_map = np.zeros((5, 12), dtype=np.int32)
        color_map[2, 1:11] = 1
        labels, zones = label_zones(color_map)
        line = zones[labels[2, 5]]

        point = continuity_label_position(line, 12, 5)

        # Vertical runs are zero, so the nearest-to-centroid pixel is used
        assert _inside(labels, line.id, point)
        assert point[1] == pytest.approx(2.5)

    def test_seed_positions_inside(self, labeled_islands):
        labels, zones = labeled_islands
        seeds = seed_label_positions(zones, 30, 30)
        for zone in zones:
            assert _inside(labels, zone.id, seeds[zone.id])


class TestPolylabelFailure:
    """Test the raster fallback when shapely's polylabel raises."""

    @staticmethod
    def _failing(*args, **kwargs):
        raise GEOSException("IllegalArgumentException: forced failure")

    def test_falls_back_to_raster(self, labeled_islands, monkeypatch):
        labels, zones = labeled_islands
        contours = trace_contours(zones, 30, 30)
        monkeypatch.setattr(label_placer_module, 'polylabel', self._failing)

        with pytest.warns(GeometryWarning, match="polylabel failed"):
            positions = place_labels(zones, contours, labels)

        for zone in zones:
            assert positions[zone.id] == grid_label_position(zone, 30, 30)
            assert _inside(labels, zone.id, positions[zone.id])

    def test_reported_by_pipeline(self, two_band_image, monkeypatch):
        monkeypatch.setattr(label_placer_module, 'polylabel', self._failing)

        result = process_image(two_band_image, 2, 0, 0)

        assert any("polylabel failed" in w for w in result.warnings)
        assert set(result.label_positions) == {z.id for z in result.zones}
