"""Placement of palette numbers inside zones."""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.ndimage import distance_transform_edt
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.geometry.polygon import orient
from shapely.ops import polylabel

from pbnkit.types import Contour, GeometryWarning, Point, Zone, emit_warning

logger = logging.getLogger(__name__)


def clamp_point(x: float, y: float, width: int, height: int) -> Point:
    return float(min(max(x, 0.0), width)), float(min(max(y, 0.0), height))


def pole_of_inaccessibility(contours: Sequence[Contour], tolerance: float = 0.5) -> Optional[Point]:
    """
    Interior point farthest from the boundary of the largest polygon.

    Returns:
        (x, y) or None when no usable polygon exists
    """
    best = None
    for contour in contours:
        if len(contour.path) < 3:
            continue
        polygon = Polygon(contour.path, [h for h in contour.holes if len(h) >= 3])
        if not polygon.is_valid or polygon.area <= 0:
            continue
        if best is None or polygon.area > best.area:
            best = polygon

    if best is None:
        return None

    # Outer ring counter-clockwise, holes clockwise
    point = polylabel(orient(best, sign=1.0), tolerance=tolerance)
    return float(point.x), float(point.y)


def _zone_mask(zone: Zone, width: int, pad: int = 1):
    """Zone mask over its bounding box with a background border."""
    x0, y0, x1, y1 = zone.bbox(width)
    ys, xs = zone.coords(width)
    mask = np.zeros((y1 - y0 + 2 * pad, x1 - x0 + 2 * pad), dtype=bool)
    mask[ys - y0 + pad, xs - x0 + pad] = True
    return mask, x0 - pad, y0 - pad


def grid_label_position(zone: Zone, width: int, height: int, max_radius: float = 50) -> Point:
    """
    Pixel farthest from the zone boundary, distances clipped at max_radius.

    The first maximum in raster order wins. Returned at the pixel centre.
    """
    mask, ox, oy = _zone_mask(zone, width)
    distance = np.minimum(distance_transform_edt(mask), max_radius)
    row, col = np.unravel_index(np.argmax(distance), distance.shape)
    return clamp_point(col + ox + 0.5, row + oy + 0.5, width, height)


def _run_lengths(mask: np.ndarray, axis: int, reverse: bool) -> np.ndarray:
    """Consecutive True cells ending at each cell, scanning along axis."""
    data = np.flip(mask, axis=axis) if reverse else mask
    data = np.moveaxis(data, axis, -1)
    n = data.shape[-1]
    index = np.broadcast_to(np.arange(1, n + 1), data.shape)
    last_false = np.maximum.accumulate(np.where(data, 0, index), axis=-1)
    runs = np.where(data, index - last_false, 0)
    runs = np.moveaxis(runs, -1, axis)
    return np.flip(runs, axis=axis) if reverse else runs


def continuity_label_position(
    zone: Zone,
    width: int,
    height: int,
    max_samples: int = 2000,
    max_steps: int = 1000
) -> Point:
    """
    Zone pixel with the largest product of its four straight-line runs.

    Each run counts same-zone pixels from the candidate up, down, left and
    right, capped at max_steps. Large zones are scored on a strided sample.
    When every score is zero the zone pixel nearest the centroid is used.
    """
    mask, ox, oy = _zone_mask(zone, width)
    steps = [
        _run_lengths(mask, axis, reverse)
        for axis in (0, 1) for reverse in (False, True)
    ]
    # Runs include the pixel itself; count steps beyond it
    score_map = np.ones(mask.shape, dtype=np.float64)
    for run in steps:
        score_map *= np.minimum(np.maximum(run - 1, 0), max_steps)

    ys, xs = zone.coords(width)
    stride = max(1, len(ys) // max_samples)
    ys, xs = ys[::stride], xs[::stride]
    scores = score_map[ys - oy, xs - ox]

    if scores.max() > 0:
        best = int(np.argmax(scores))
        return clamp_point(xs[best] + 0.5, ys[best] + 0.5, width, height)

    all_ys, all_xs = zone.coords(width)
    cx, cy = zone.centroid
    nearest = int(np.argmin((all_xs - cx) ** 2 + (all_ys - cy) ** 2))
    return clamp_point(all_xs[nearest] + 0.5, all_ys[nearest] + 0.5, width, height)


def seed_label_positions(zones: Sequence[Zone], width: int, height: int) -> Dict[int, Point]:
    """Continuity-based positions computed from the raster, before vectorization."""
    return {z.id: continuity_label_position(z, width, height) for z in zones}


def place_labels(
    zones: Sequence[Zone],
    contours: Sequence[Contour],
    labels: np.ndarray,
    max_radius: float = 50,
    seeds: Optional[Dict[int, Point]] = None,
    deadline=None
) -> Dict[int, Point]:
    """
    Choose a label point for every zone.

    Uses the pole of inaccessibility of the zone's largest polygon. A zone
    with no usable polygon falls back to a distance-transform search on
    the raster. When the polygon point lands on another zone's pixel (the
    polygon may have been simplified or unioned), the pre-vectorization
    seed is used if one is given.

    Returns:
        Mapping of zone id -> (x, y) clamped to the image
    """
    height, width = labels.shape
    by_zone: Dict[int, List[Contour]] = defaultdict(list)
    for contour in contours:
        by_zone[contour.zone_id].append(contour)

    positions: Dict[int, Point] = {}
    fallbacks = 0
    for i, zone in enumerate(zones):
        if deadline is not None and i % 256 == 0:
            deadline.check('labels')

        point = None
        if by_zone.get(zone.id):
            try:
                point = pole_of_inaccessibility(by_zone[zone.id])
            except (GEOSException, ValueError) as e:
                emit_warning(
                    logger,
                    f"Zone {zone.id}: polylabel failed ({e}), using raster search",
                    GeometryWarning
                )

        if point is not None:
            x, y = clamp_point(point[0], point[1], width, height)
            px, py = min(int(x), width - 1), min(int(y), height - 1)
            if labels[py, px] == zone.id:
                positions[zone.id] = (x, y)
                continue
            if seeds is not None and zone.id in seeds:
                positions[zone.id] = seeds[zone.id]
                continue

        fallbacks += 1
        positions[zone.id] = grid_label_position(zone, width, height, max_radius)

    logger.info(f"Placed {len(positions)} labels ({fallbacks} by raster search)")
    return positions
