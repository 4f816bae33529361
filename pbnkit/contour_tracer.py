"""Zone contour tracing, adaptive simplification and same-color polygon union."""
import logging
import math
from collections import defaultdict
from typing import Dict, List, Sequence

import cv2
import numpy as np
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid
from skimage import measure

from pbnkit.types import Contour, GeometryWarning, ResourceLimitExceeded, Zone, emit_warning

logger = logging.getLogger(__name__)

MIN_TOLERANCE = 0.2
MAX_TOLERANCE = 2.0
TOLERANCE_SCALE = 0.015


def simplification_tolerance(area: float) -> float:
    """Douglas-Peucker tolerance for a zone: clamp(sqrt(area) * 0.015, 0.2, 2.0)."""
    return min(MAX_TOLERANCE, max(MIN_TOLERANCE, math.sqrt(max(area, 0.0)) * TOLERANCE_SCALE))


def trace_zone_rings(zone: Zone, width: int, height: int) -> List[np.ndarray]:
    """
    Trace the boundary rings of one zone.

    Works on the zone's bounding box padded by one pixel so every ring
    closes. Marching squares at level 0.5 puts the boundary on pixel edges;
    coordinates are returned as (x, y) in pixel-edge space, clamped to
    [0, width] x [0, height], without the repeated closing vertex.
    """
    x0, y0, x1, y1 = zone.bbox(width)
    ys, xs = zone.coords(width)

    mask = np.zeros((y1 - y0 + 2, x1 - x0 + 2), dtype=np.uint8)
    mask[ys - y0 + 1, xs - x0 + 1] = 1

    rings = []
    for contour in measure.find_contours(mask, 0.5):
        # (row, col) -> (x, y); pixel centres sit at +0.5 in edge space
        ring = np.column_stack([contour[:, 1] + x0 - 0.5, contour[:, 0] + y0 - 0.5])
        if len(ring) > 1 and np.allclose(ring[0], ring[-1]):
            ring = ring[:-1]
        ring[:, 0] = np.clip(ring[:, 0], 0, width)
        ring[:, 1] = np.clip(ring[:, 1], 0, height)
        rings.append(ring)

    return rings


def simplify_ring(ring: np.ndarray, tolerance: float) -> np.ndarray:
    """
    Simplify a closed ring with Douglas-Peucker.

    Never returns fewer than 3 vertices: if simplification collapses the
    ring, the input ring is returned unchanged.
    """
    if len(ring) < 3:
        return ring

    simplified = cv2.approxPolyDP(
        ring.astype(np.float32).reshape(-1, 1, 2),
        tolerance,
        closed=True
    ).reshape(-1, 2).astype(np.float64)

    if len(simplified) < 3:
        return ring
    return simplified


def _ring_area(ring: np.ndarray) -> float:
    x, y = ring[:, 0], ring[:, 1]
    return 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def _polygon_parts(geometry: BaseGeometry) -> List[Polygon]:
    """Non-empty polygons contained in any geometry."""
    if geometry.is_empty:
        return []
    if isinstance(geometry, Polygon):
        return [geometry] if geometry.area > 0 else []
    if hasattr(geometry, 'geoms'):
        parts = []
        for geom in geometry.geoms:
            parts.extend(_polygon_parts(geom))
        return parts
    return []


def _polygon_to_contour(polygon: Polygon, zone_id: int, color_idx: int) -> Contour:
    path = np.asarray(polygon.exterior.coords, dtype=np.float64)[:-1]
    holes = tuple(
        np.asarray(interior.coords, dtype=np.float64)[:-1] for interior in polygon.interiors
    )
    return Contour(zone_id=zone_id, color_idx=color_idx, path=path, holes=holes)


def _contour_to_polygon(contour: Contour) -> Polygon:
    return Polygon(contour.path, [h for h in contour.holes if len(h) >= 3])


def rings_to_contours(zone: Zone, rings: Sequence[np.ndarray]) -> List[Contour]:
    """
    Nest rings into polygons with holes using the even-odd rule.

    Falls back to one hole-free contour per ring when the geometry cannot
    be built.
    """
    rings = [r for r in rings if len(r) >= 3]
    if not rings:
        return []

    try:
        shape = None
        for ring in rings:
            polygon = make_valid(Polygon(ring))
            shape = polygon if shape is None else shape.symmetric_difference(polygon)
        parts = _polygon_parts(shape)
    except (GEOSException, ValueError) as e:
        emit_warning(
            logger,
            f"Zone {zone.id}: polygon nesting failed ({e}), using raw rings",
            GeometryWarning
        )
        return [
            Contour(zone_id=zone.id, color_idx=zone.color_idx, path=ring)
            for ring in rings
        ]

    return [_polygon_to_contour(p, zone.id, zone.color_idx) for p in parts]


def union_same_color(
    contours: List[Contour],
    zones: Sequence[Zone],
    max_group: int = 100
) -> List[Contour]:
    """
    Union polygons that share a palette color.

    Groups with a single contour or more than max_group contours are left
    alone. Each union polygon goes to the largest zone whose contour it
    covers. A group whose union fails keeps its original contours.
    """
    areas: Dict[int, int] = {z.id: z.area for z in zones}
    groups: Dict[int, List[Contour]] = defaultdict(list)
    for contour in contours:
        groups[contour.color_idx].append(contour)

    result: List[Contour] = []
    for color_idx in sorted(groups):
        group = groups[color_idx]
        if len(group) == 1 or len(group) > max_group:
            result.extend(group)
            continue

        try:
            polygons = [make_valid(_contour_to_polygon(c)) for c in group]
            merged = _polygon_parts(unary_union(polygons))
        except (GEOSException, ValueError) as e:
            emit_warning(
                logger,
                f"Color {color_idx}: polygon union failed ({e}), keeping raw contours",
                GeometryWarning
            )
            result.extend(group)
            continue

        markers = [(c.zone_id, poly.representative_point()) for c, poly in zip(group, polygons)
                  if not poly.is_empty]
        for part in merged:
            owners = [zone_id for zone_id, point in markers if part.covers(point)]
            if not owners:
                owners = [c.zone_id for c in group]
            owner = max(owners, key=lambda zid: (areas.get(zid, 0), -zid))
            result.append(_polygon_to_contour(part, owner, color_idx))

    return result


def _cap_rings(zone: Zone, rings: List[np.ndarray], max_rings: int, max_points: int) -> List[np.ndarray]:
    if len(rings) > max_rings:
        emit_warning(
            logger,
            f"Zone {zone.id}: {len(rings)} rings exceed cap {max_rings}, keeping largest",
            ResourceLimitExceeded
        )
        rings = sorted(rings, key=_ring_area, reverse=True)[:max_rings]

    capped = []
    for ring in rings:
        if len(ring) > max_points:
            step = int(math.ceil(len(ring) / max_points))
            emit_warning(
                logger,
                f"Zone {zone.id}: ring with {len(ring)} points exceeds cap {max_points}, "
                f"keeping every {step}th point",
                ResourceLimitExceeded
            )
            ring = ring[::step]
        capped.append(ring)
    return capped


def trace_contours(
    zones: Sequence[Zone],
    width: int,
    height: int,
    max_rings_per_zone: int = 256,
    max_ring_points: int = 20_000,
    union_max_group: int = 100,
    deadline=None
) -> List[Contour]:
    """
    Vectorize every zone into simplified polygons.

    Args:
        zones: Zones to trace
        width: Image width
        height: Image height
        max_rings_per_zone: Safety cap on traced rings per zone
        max_ring_points: Safety cap on vertices per traced ring
        union_max_group: Largest same-color group that is unioned
        deadline: Optional object with a check(stage) method

    Returns:
        List of Contour, one or more per zone
    """
    contours: List[Contour] = []

    for i, zone in enumerate(zones):
        if deadline is not None and i % 64 == 0:
            deadline.check('contours')

        rings = _cap_rings(
            zone,
            trace_zone_rings(zone, width, height),
            max_rings_per_zone,
            max_ring_points
        )
        tolerance = simplification_tolerance(zone.area)
        rings = [simplify_ring(r, tolerance) for r in rings]
        contours.extend(rings_to_contours(zone, rings))

    traced = len(contours)
    contours = union_same_color(contours, zones, union_max_group)

    logger.info(
        f"Traced {traced} contours for {len(zones)} zones, "
        f"{len(contours)} after same-color union"
    )
    return contours
