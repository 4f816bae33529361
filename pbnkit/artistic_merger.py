"""Perceptual (Delta E) merging of adjacent zones for a looser, painterly look."""
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

import numpy as np

from pbnkit.color_space import ColorSpace, delta_e_2000
from pbnkit.lru_cache import LRUCache
from pbnkit.types import ArtisticMergeOptions, ArtisticMergeStats, InputError, Zone
from pbnkit.zone_labeler import build_zones, zone_color_lookup

logger = logging.getLogger(__name__)


@dataclass
class ArtisticMergeResult:
    zones: List[Zone]
    labels: np.ndarray
    stats: ArtisticMergeStats


class DeltaECache:
    """Memoized CIEDE2000 distance between palette entries, keyed by sorted index pair."""

    def __init__(self, palette: np.ndarray, color_space: Optional[ColorSpace] = None, max_size: int = 4096):
        self.color_space = color_space or ColorSpace()
        self.palette_lab = self.color_space.palette_to_lab(palette)
        self._cache = LRUCache(max_size)

    def distance(self, index_a: int, index_b: int) -> float:
        key = (index_a, index_b) if index_a <= index_b else (index_b, index_a)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        if key[1] >= len(self.palette_lab) or key[0] < 0:
            return float('inf')

        value = delta_e_2000(self.palette_lab[key[0]], self.palette_lab[key[1]])
        self._cache.set(key, value)
        return value

    def __len__(self) -> int:
        return len(self._cache)


def build_neighbor_map(labels: np.ndarray) -> Dict[int, Set[int]]:
    """4-connected adjacency between zone ids."""
    pairs = []
    horizontal = labels[:, 1:] != labels[:, :-1]
    vertical = labels[1:, :] != labels[:-1, :]
    if horizontal.any():
        pairs.append(np.stack([labels[:, 1:][horizontal], labels[:, :-1][horizontal]], axis=1))
    if vertical.any():
        pairs.append(np.stack([labels[1:, :][vertical], labels[:-1, :][vertical]], axis=1))

    neighbors: Dict[int, Set[int]] = {int(z): set() for z in np.unique(labels)}
    if not pairs:
        return neighbors

    edges = np.unique(np.sort(np.concatenate(pairs), axis=1), axis=0)
    for a, b in edges.tolist():
        neighbors[a].add(b)
        neighbors[b].add(a)
    return neighbors


def artistic_merge(
    zones: List[Zone],
    labels: np.ndarray,
    palette: np.ndarray,
    options: ArtisticMergeOptions,
    color_space: Optional[ColorSpace] = None,
    delta_cache: Optional[DeltaECache] = None
) -> ArtisticMergeResult:
    """
    Merge adjacent zones whose palette colors are perceptually close.

    For up to options.max_iterations rounds, every zone not yet scheduled
    in the round looks up its unscheduled neighbor with the smallest
    Delta E. The pair merges when the zone is smaller than min_merge_area
    or that Delta E is within merge_tolerance. The larger zone of the pair
    receives the other (the neighbor wins ties) and keeps its id and color;
    the donor's id is retired. A round with no merges ends the loop.

    Args:
        zones: Zones of the input generation
        labels: HxW zone-id map (not modified)
        palette: (N, 3) uint8 palette
        options: Tolerance, minimum area, image size and round limit
        color_space: Color conversion cache
        delta_cache: Pairwise distance memo to reuse across calls on one palette

    Returns:
        ArtisticMergeResult with new zones, labels and stats
    """
    h, w = labels.shape
    if (options.width, options.height) != (w, h):
        raise InputError(
            f"Options size {options.width}x{options.height} does not match labels {w}x{h}"
        )

    start = time.perf_counter()
    delta_cache = delta_cache or DeltaECache(palette, color_space)

    working = labels.copy()
    flat = working.ravel()
    # Insertion order drives visiting order; recipients keep their slot
    areas: Dict[int, int] = {z.id: z.area for z in sorted(zones, key=lambda z: z.id)}
    colors = zone_color_lookup(zones)
    owned = {z.id: [z.pixels] for z in zones}
    neighbors = build_neighbor_map(labels)

    iterations = 0
    merged_count = 0
    total_delta_e = 0.0

    while iterations < options.max_iterations:
        iterations += 1
        scheduled: Set[int] = set()
        merge_pairs = []

        for zone_id in list(areas):
            if zone_id in scheduled:
                continue

            best_id = None
            best_delta_e = float('inf')
            for neighbor_id in sorted(neighbors.get(zone_id, ())):
                if neighbor_id in scheduled:
                    continue
                distance = delta_cache.distance(colors[zone_id], colors[neighbor_id])
                if distance < best_delta_e:
                    best_delta_e = distance
                    best_id = neighbor_id

            if best_id is None:
                continue

            if not (areas[zone_id] < options.min_merge_area or best_delta_e <= options.merge_tolerance):
                continue

            if areas[best_id] >= areas[zone_id]:
                recipient, donor = best_id, zone_id
            else:
                recipient, donor = zone_id, best_id

            merge_pairs.append((recipient, donor, best_delta_e))
            scheduled.add(recipient)
            scheduled.add(donor)

        if not merge_pairs:
            break

        for recipient, donor, delta_e in merge_pairs:
            for pixels in owned[donor]:
                flat[pixels] = recipient
            owned[recipient].extend(owned.pop(donor))
            areas[recipient] += areas.pop(donor)

            merged_neighbors = neighbors.pop(donor, set()) | neighbors.get(recipient, set())
            merged_neighbors.discard(recipient)
            merged_neighbors.discard(donor)
            neighbors[recipient] = merged_neighbors
            for neighbor_id in merged_neighbors:
                other = neighbors[neighbor_id]
                other.discard(donor)
                other.add(recipient)

            merged_count += 1
            total_delta_e += delta_e

        logger.debug(f"Artistic merge round {iterations}: {len(merge_pairs)} merges")

    new_zones = build_zones(working, colors, len(palette))
    elapsed_ms = (time.perf_counter() - start) * 1000.0

    stats = ArtisticMergeStats(
        iterations=iterations,
        elapsed_ms=elapsed_ms,
        before_count=len(zones),
        after_count=len(new_zones),
        merged_count=merged_count,
        average_delta_e=total_delta_e / merged_count if merged_count else 0.0,
        merge_tolerance=options.merge_tolerance,
        min_merge_area=options.min_merge_area
    )

    logger.info(
        f"Artistic merge: {stats.before_count} -> {stats.after_count} zones "
        f"in {iterations} rounds (avg dE {stats.average_delta_e:.2f})"
    )
    return ArtisticMergeResult(zones=new_zones, labels=working, stats=stats)
