"""Connected-component zone extraction over a color-index map."""
import bisect
import logging
from typing import Dict, List, Mapping, Tuple

import numpy as np

from pbnkit.types import InputError, ResourceLimitExceeded, Zone, emit_warning

logger = logging.getLogger(__name__)


def _row_runs(color_map: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split every row into maximal same-color horizontal runs.

    Returns:
        (starts, lengths, colors) with starts as flat pixel indices in
        raster order. The runs tile the image.
    """
    h, w = color_map.shape
    flat = color_map.ravel()
    change = np.ones(flat.size, dtype=bool)
    change[1:] = flat[1:] != flat[:-1]
    change[::w] = True

    starts = np.flatnonzero(change)
    lengths = np.diff(np.append(starts, flat.size))
    return starts, lengths, flat[starts]


def label_zones(
    color_map: np.ndarray,
    max_iterations: int = 1_000_000,
    max_stack: int = 500_000,
    deadline=None
) -> Tuple[np.ndarray, List[Zone]]:
    """
    Label 8-connected same-color zones with an explicit-stack scanline fill.

    Zones are numbered 0.. in raster-scan order of their first pixel. The
    worklist holds horizontal runs; two runs on adjacent rows connect when
    they share a color and their spans overlap once extended by one pixel
    on each side, which covers diagonal contact.

    Args:
        color_map: HxW array of palette indices
        max_iterations: Cap on runs processed for a single zone
        max_stack: Cap on the pending worklist for a single zone
        deadline: Optional object with a check(stage) method

    Returns:
        Tuple of (labels, zones) where labels is an HxW int32 zone-id map
    """
    if color_map.ndim != 2 or color_map.size == 0:
        raise InputError(f"Expected non-empty 2D color map, got shape {color_map.shape}")

    h, w = color_map.shape
    starts, lengths, colors = _row_runs(color_map)

    run_starts = starts.tolist()
    run_lengths = lengths.tolist()
    run_colors = colors.tolist()
    run_labels = [-1] * len(run_starts)

    zone_colors: List[int] = []
    zone_areas: List[int] = []
    zone_sums: List[Tuple[float, float]] = []
    capped = 0

    for seed in range(len(run_starts)):
        if run_labels[seed] != -1:
            continue

        zone_id = len(zone_colors)
        if deadline is not None and zone_id % 1024 == 0:
            deadline.check('label')
        color = run_colors[seed]
        area = 0
        sum_x = 0.0
        sum_y = 0.0

        run_labels[seed] = zone_id
        stack = [seed]
        iterations = 0
        stack_capped = False

        while stack:
            iterations += 1
            if iterations > max_iterations:
                capped += 1
                emit_warning(
                    logger,
                    f"Zone {zone_id}: flood fill hit {max_iterations} iterations, truncating",
                    ResourceLimitExceeded
                )
                # Runs already claimed still belong to this zone
                for pending in stack:
                    n = run_lengths[pending]
                    y, x0 = divmod(run_starts[pending], w)
                    area += n
                    sum_x += n * x0 + n * (n - 1) / 2
                    sum_y += n * y
                break

            run = stack.pop()
            n = run_lengths[run]
            y, x0 = divmod(run_starts[run], w)
            x1 = x0 + n

            area += n
            sum_x += n * x0 + n * (n - 1) / 2
            sum_y += n * y

            for ny in (y - 1, y + 1):
                if ny < 0 or ny >= h:
                    continue
                row_base = ny * w
                lo = bisect.bisect_right(run_starts, row_base + max(x0 - 1, 0)) - 1
                hi = bisect.bisect_right(run_starts, row_base + min(x1, w - 1)) - 1
                for other in range(lo, hi + 1):
                    if run_labels[other] != -1 or run_colors[other] != color:
                        continue
                    if len(stack) >= max_stack:
                        # Unclaimed runs are picked up later by the scan
                        if not stack_capped:
                            stack_capped = True
                            capped += 1
                            emit_warning(
                                logger,
                                f"Zone {zone_id}: flood fill stack reached {max_stack}, truncating",
                                ResourceLimitExceeded
                            )
                        continue
                    run_labels[other] = zone_id
                    stack.append(other)

        zone_colors.append(int(color))
        zone_areas.append(area)
        zone_sums.append((sum_x, sum_y))

    labels = np.repeat(np.asarray(run_labels, dtype=np.int32), lengths).reshape(h, w)

    pixel_lists = _pixels_by_label(labels, len(zone_colors))
    zones = [
        Zone(
            id=i,
            color_idx=zone_colors[i],
            area=zone_areas[i],
            pixels=pixel_lists[i],
            centroid=(zone_sums[i][0] / zone_areas[i], zone_sums[i][1] / zone_areas[i])
        )
        for i in range(len(zone_colors))
    ]

    logger.info(f"Labeled {len(zones)} zones from {len(run_starts)} runs")
    if capped:
        logger.warning(f"{capped} flood fills were truncated by safety caps")

    return labels, zones


def _pixels_by_label(labels: np.ndarray, num_labels: int) -> List[np.ndarray]:
    """Flat pixel indices for each label id, ascending within each id."""
    flat = labels.ravel().astype(np.int64)
    counts = np.bincount(flat, minlength=num_labels)
    order = np.argsort(flat, kind='stable')
    bounds = np.concatenate([[0], np.cumsum(counts)])
    return [order[bounds[i]:bounds[i + 1]] for i in range(num_labels)]


def build_zones(
    labels: np.ndarray,
    color_lookup: Mapping[int, int],
    palette_size: int
) -> List[Zone]:
    """
    Rebuild zones from a label map.

    Zone ids are the labels present in the map, in ascending order. A zone's
    color comes from color_lookup, or label % palette_size when the label
    is unknown.

    Args:
        labels: HxW zone-id map
        color_lookup: Zone id -> palette index from the previous generation
        palette_size: Palette length, used for the fallback color

    Returns:
        List of Zone sorted by id
    """
    h, w = labels.shape
    flat = labels.ravel().astype(np.int64)
    if flat.size == 0:
        return []
    if flat.min() < 0:
        raise ValueError("Label map contains unassigned pixels")

    num_labels = int(flat.max()) + 1
    counts = np.bincount(flat, minlength=num_labels)
    index = np.arange(flat.size)
    sum_x = np.bincount(flat, weights=index % w, minlength=num_labels)
    sum_y = np.bincount(flat, weights=index // w, minlength=num_labels)
    pixel_lists = _pixels_by_label(labels, num_labels)

    zones = []
    for zone_id in np.flatnonzero(counts):
        zone_id = int(zone_id)
        area = int(counts[zone_id])
        color = color_lookup.get(zone_id)
        if color is None:
            color = zone_id % max(palette_size, 1)
        zones.append(Zone(
            id=zone_id,
            color_idx=int(color),
            area=area,
            pixels=pixel_lists[zone_id],
            centroid=(float(sum_x[zone_id] / area), float(sum_y[zone_id] / area))
        ))

    return zones


def zone_color_lookup(zones: List[Zone]) -> Dict[int, int]:
    """Map zone id -> palette index."""
    return {z.id: z.color_idx for z in zones}


def color_index_map(labels: np.ndarray, zones: List[Zone]) -> np.ndarray:
    """Paint each pixel with its zone's palette index."""
    lookup = np.zeros(int(labels.max()) + 1 if labels.size else 1, dtype=np.int32)
    for zone in zones:
        lookup[zone.id] = zone.color_idx
    return lookup[labels]
