"""Tests for contour tracing and simplification."""
import numpy as np
import pytest
from shapely.errors import GEOSException
from shapely.geometry import Polygon

import pbnkit.contour_tracer as contour_tracer_module
from pbnkit import process_image
from pbnkit.contour_tracer import (
    rings_to_contours,
    simplification_tolerance,
    simplify_ring,
    trace_contours,
    trace_zone_rings,
    union_same_color,
)
from pbnkit.types import Contour, GeometryWarning, ResourceLimitExceeded, Zone
from pbnkit.zone_labeler import label_zones


def _square(x0, y0, size):
    return np.array([[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size]], dtype=float)


def _zone(zone_id, color_idx, area):
    return Zone(
        id=zone_id,
        color_idx=color_idx,
        area=area,
        pixels=np.arange(area, dtype=np.int64),
        centroid=(0.0, 0.0)
    )


class TestSimplification:
    """Test the adaptive Douglas-Peucker tolerance."""

    @pytest.mark.parametrize("area, expected", [
        (1, 0.2),
        (100, 0.2),
        (10000, 1.5),
        (1_000_000, 2.0),
    ])
    def test_tolerance(self, area, expected):
        assert simplification_tolerance(area) == pytest.approx(expected)

    def test_collinear_points_removed(self):
        ring = np.array([[0, 0], [5, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        simplified = simplify_ring(ring, 0.5)
        assert len(simplified) == 4

    def test_never_below_three_vertices(self):
        ring = np.array([[0, 0], [10, 0], [10, 0.1], [0, 0.1]], dtype=float)
        simplified = simplify_ring(ring, 5.0)
        assert len(simplified) >= 3


class TestTracing:
    """Test ring tracing on label maps."""

    def test_block_ring_bounds(self, island_color_map, labeled_islands):
        _, zones = labeled_islands
        rings = trace_zone_rings(zones[1], 30, 30)

        assert len(rings) == 1
        ring = rings[0]
        assert ring[:, 0].min() == pytest.approx(5.0)
        assert ring[:, 0].max() == pytest.approx(17.0)
        assert ring[:, 1].min() == pytest.approx(5.0)
        assert ring[:, 1].max() == pytest.approx(17.0)
        assert Polygon(ring).area == pytest.approx(144, abs=1.0)

    def test_background_has_holes(self, labeled_islands):
        _, zones = labeled_islands
        contours = trace_contours(zones, 30, 30)

        by_zone = {c.zone_id: c for c in contours}
        assert set(by_zone) == {0, 1, 2}
        assert len(by_zone[0].holes) == 2
        assert by_zone[1].holes == ()
        for contour in contours:
            assert contour.num_points >= 3

    def test_coordinates_within_image(self, labeled_islands):
        _, zones = labeled_islands
        for contour in trace_contours(zones, 30, 30):
            for ring in (contour.path,) + contour.holes:
                assert ring[:, 0].min() >= 0 and ring[:, 0].max() <= 30
                assert ring[:, 1].min() >= 0 and ring[:, 1].max() <= 30

    def test_ring_cap_warns(self):
        color_map = np.zeros((9, 9), dtype=np.int32)
        color_map[1::2, 1::2] = 1
        _, zones = label_zones(color_map)
        background = zones[0]

        with pytest.warns(ResourceLimitExceeded):
            contours = trace_contours([background], 9, 9, max_rings_per_zone=3)

        assert len(contours) >= 1


class TestNestingAndUnion:
    """Test polygon construction from rings."""

    def test_even_odd_nesting(self):
        zone = _zone(0, 0, 84)
        contours = rings_to_contours(zone, [_square(0, 0, 10), _square(2, 2, 4)])

        assert len(contours) == 1
        assert len(contours[0].holes) == 1

    def test_touching_same_color_unioned(self):
        zones = [_zone(0, 0, 100), _zone(1, 0, 40)]
        contours = [
            Contour(zone_id=0, color_idx=0, path=_square(0, 0, 10)),
            Contour(zone_id=1, color_idx=0, path=_square(5, 5, 10)),
        ]

        merged = union_same_color(contours, zones)

        assert len(merged) == 1
        assert merged[0].zone_id == 0
        assert Polygon(merged[0].path).area == pytest.approx(175)

    def test_disjoint_same_color_keep_owners(self):
        zones = [_zone(0, 2, 16), _zone(3, 2, 9)]
        contours = [
            Contour(zone_id=0, color_idx=2, path=_square(0, 0, 4)),
            Contour(zone_id=3, color_idx=2, path=_square(10, 10, 3)),
        ]

        merged = union_same_color(contours, zones)

        assert sorted(c.zone_id for c in merged) == [0, 3]

    def test_large_groups_skipped(self):
        zones = [_zone(i, 0, 1) for i in range(3)]
        contours = [Contour(zone_id=i, color_idx=0, path=_square(i, 0, 1)) for i in range(3)]

        result = union_same_color(contours, zones, max_group=2)

        assert len(result) == 3
        assert all(a is b for a, b in zip(result, contours))


def _two_squares_image():
    """20x20 white image with two separate black squares."""
    img = np.full((20, 20, 3), 255, dtype=np.uint8)
    img[2:8, 2:8] = 0
    img[11:18, 11:18] = 0
    return img


def _failing(*args, **kwargs):
    raise GEOSException("TopologyException: forced failure")


class TestGeometryFallbacks:
    """Test recovery when shapely cannot build or union a polygon."""

    def test_union_failure_keeps_contours(self, monkeypatch):
        monkeypatch.setattr(contour_tracer_module, 'unary_union', _failing)
        zones = [_zone(0, 0, 100), _zone(1, 0, 40)]
        contours = [
            Contour(zone_id=0, color_idx=0, path=_square(0, 0, 10)),
            Contour(zone_id=1, color_idx=0, path=_square(5, 5, 10)),
        ]

        with pytest.warns(GeometryWarning, match="union failed"):
            merged = union_same_color(contours, zones)

        assert len(merged) == 2
        assert all(a is b for a, b in zip(merged, contours))

    def test_union_failure_reported_by_pipeline(self, monkeypatch):
        monkeypatch.setattr(contour_tracer_module, 'unary_union', _failing)

        result = process_image(_two_squares_image(), 2, 0, 0)

        assert any("union failed" in w for w in result.warnings)
        assert len(result.zones) == 3
        assert sorted(c.zone_id for c in result.contour_paths) == sorted(z.id for z in result.zones)

    def test_nesting_failure_uses_raw_rings(self, monkeypatch):
        monkeypatch.setattr(contour_tracer_module, 'make_valid', _failing)
        zone = _zone(4, 1, 84)
        rings = [_square(0, 0, 10), _square(2, 2, 4)]

        with pytest.warns(GeometryWarning, match="nesting failed"):
            contours = rings_to_contours(zone, rings)

        assert len(contours) == 2
        for contour, ring in zip(contours, rings):
            np.testing.assert_array_equal(contour.path, ring)
            assert contour.holes == ()
            assert (contour.zone_id, contour.color_idx) == (4, 1)

    def test_nesting_failure_reported_by_pipeline(self, monkeypatch):
        monkeypatch.setattr(contour_tracer_module, 'make_valid', _failing)

        result = process_image(_two_squares_image(), 2, 0, 0)

        assert any("nesting failed" in w for w in result.warnings)
        assert {c.zone_id for c in result.contour_paths} == {z.id for z in result.zones}
