"""Size-based zone merging: absorb small zones into their best neighbor."""
import logging
from typing import List, Optional, Tuple

import numpy as np

from pbnkit.color_space import ColorSpace
from pbnkit.types import InputError, Zone
from pbnkit.zone_labeler import build_zones, zone_color_lookup

logger = logging.getLogger(__name__)

# Weight of neighbor compactness (perimeter^2 / area) in the merge score
COMPACTNESS_WEIGHT = 0.1


def zone_perimeters(labels: np.ndarray) -> np.ndarray:
    """
    Count the pixel edges of each label that border another label or the
    image edge.

    Returns:
        Array indexed by label id
    """
    num_labels = int(labels.max()) + 1 if labels.size else 0
    perimeter = np.zeros(num_labels, dtype=np.int64)

    horizontal = labels[:, 1:] != labels[:, :-1]
    vertical = labels[1:, :] != labels[:-1, :]
    perimeter += np.bincount(labels[:, 1:][horizontal], minlength=num_labels)
    perimeter += np.bincount(labels[:, :-1][horizontal], minlength=num_labels)
    perimeter += np.bincount(labels[1:, :][vertical], minlength=num_labels)
    perimeter += np.bincount(labels[:-1, :][vertical], minlength=num_labels)

    # Image border
    for edge in (labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]):
        perimeter += np.bincount(edge, minlength=num_labels)

    return perimeter


def four_neighbors(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Flat indices of the in-bounds 4-neighbors of the given pixels (may repeat)."""
    ys, xs = np.divmod(pixels, width)
    parts = [
        pixels[xs > 0] - 1,
        pixels[xs < width - 1] + 1,
        pixels[ys > 0] - width,
        pixels[ys < height - 1] + width,
    ]
    return np.concatenate(parts)


def merge_small_zones(
    zones: List[Zone],
    labels: np.ndarray,
    palette: np.ndarray,
    min_region_size: int,
    color_space: Optional[ColorSpace] = None
) -> Tuple[np.ndarray, List[Zone]]:
    """
    Merge zones smaller than min_region_size into an adjacent zone.

    Small zones are visited in ascending id order. Each picks the
    4-connected neighbor minimizing

        DeltaE2000(own color, neighbor color) + 0.1 * perimeter^2 / area

    with perimeter and area of the neighbor taken from the input map. A
    zone that has already grown past the threshold, or has no neighbor,
    stays. Absorbed pixels take the recipient's id and color.

    Args:
        zones: Zones of the input generation
        labels: HxW zone-id map of the input generation
        palette: (N, 3) uint8 palette
        min_region_size: Minimum zone area in pixels
        color_space: Color conversion cache (a fresh one if None)

    Returns:
        Tuple of (labels, zones) for the new generation
    """
    if min_region_size < 0:
        raise InputError(f"min_region_size must be >= 0, got {min_region_size}")

    if not zones or min_region_size <= 1:
        return labels, zones

    color_space = color_space or ColorSpace()
    h, w = labels.shape
    delta_e = color_space.delta_e_matrix(palette)
    perimeters = zone_perimeters(labels)

    colors = zone_color_lookup(zones)
    areas = {z.id: z.area for z in zones}
    compactness = {
        z.id: float(perimeters[z.id]) ** 2 / z.area for z in zones
    }

    working = labels.copy()
    flat = working.ravel()
    owned = {z.id: [z.pixels] for z in zones}
    current_area = dict(areas)
    merges = 0

    for zone in sorted(zones, key=lambda z: z.id):
        if zone.area >= min_region_size:
            continue
        if zone.id not in owned or current_area[zone.id] >= min_region_size:
            continue

        pixels = np.concatenate(owned[zone.id])
        neighbor_ids = np.unique(flat[four_neighbors(pixels, w, h)])
        neighbor_ids = neighbor_ids[neighbor_ids != zone.id]
        if len(neighbor_ids) == 0:
            continue

        own_color = colors[zone.id]
        best_id = None
        best_score = np.inf
        for nid in neighbor_ids.tolist():
            score = delta_e[own_color, colors[nid]] + COMPACTNESS_WEIGHT * compactness[nid]
            if score < best_score:
                best_score = score
                best_id = nid

        flat[pixels] = best_id
        owned[best_id].extend(owned.pop(zone.id))
        current_area[best_id] += current_area.pop(zone.id)
        merges += 1
        logger.debug(f"Merged zone {zone.id} ({zone.area}px) into {best_id} (score {best_score:.2f})")

    new_zones = build_zones(working, colors, len(palette))
    logger.info(
        f"Merged {merges} small zones (min {min_region_size}px): "
        f"{len(zones)} -> {len(new_zones)}"
    )
    return working, new_zones
