"""Majority-vote smoothing of zone boundaries on the label map."""
import logging
from typing import Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy.ndimage import maximum_filter, minimum_filter

from pbnkit.types import InputError

logger = logging.getLogger(__name__)

# Windows evaluated per vectorized batch
CHUNK_SIZE = 32768


def _window_majority(windows: np.ndarray) -> np.ndarray:
    """
    Most frequent value of each row, ties going to the value that occurs
    first in the row.

    Rows whose centre value already fills more than half the row are
    decided without sorting; only the contested rows go through the full
    vote.

    Args:
        windows: (N, K) array, one flattened window per row

    Returns:
        (N,) array of winning values
    """
    n, k = windows.shape
    center = k // 2
    result = windows[:, center].copy()
    center_count = (windows == windows[:, center:center + 1]).sum(axis=1)
    contested = center_count <= k // 2
    if contested.any():
        result[contested] = _sorted_vote(windows[contested])
    return result


def _sorted_vote(windows: np.ndarray) -> np.ndarray:
    """Full sort-based vote over every row."""
    n, k = windows.shape
    order = np.argsort(windows, axis=1, kind='stable')
    ordered = np.take_along_axis(windows, order, axis=1)

    positions = np.broadcast_to(np.arange(k), (n, k))
    new_group = np.ones((n, k), dtype=bool)
    new_group[:, 1:] = ordered[:, 1:] != ordered[:, :-1]
    group_start = np.maximum.accumulate(np.where(new_group, positions, 0), axis=1)

    group_end_flag = np.ones((n, k), dtype=bool)
    group_end_flag[:, :-1] = new_group[:, 1:]
    reversed_end = np.where(group_end_flag[:, ::-1], positions, 0)
    group_end = (k - 1) - np.maximum.accumulate(reversed_end, axis=1)[:, ::-1]

    counts = group_end - group_start + 1
    # Stable sort keeps the earliest occurrence at the start of each group
    first_seen = np.take_along_axis(order, group_start, axis=1)

    score = counts * (k + 1) - first_seen
    best = np.argmax(score, axis=1)
    return ordered[np.arange(n), best]


def smooth_round(labels: np.ndarray, radius: int) -> np.ndarray:
    """
    One majority-filter pass. Reads only the input array and returns a new one.

    Pixels closer than radius to the image edge keep their label.
    """
    h, w = labels.shape
    size = 2 * radius + 1
    out = labels.copy()
    if h < size or w < size:
        return out

    # Only pixels whose window holds more than one label can change
    mixed = maximum_filter(labels, size=size, mode='nearest') != minimum_filter(
        labels, size=size, mode='nearest'
    )
    interior = np.zeros_like(mixed)
    interior[radius:h - radius, radius:w - radius] = True
    ys, xs = np.nonzero(mixed & interior)
    if len(ys) == 0:
        return out

    windows = sliding_window_view(labels, (size, size))
    for start in range(0, len(ys), CHUNK_SIZE):
        cy = ys[start:start + CHUNK_SIZE]
        cx = xs[start:start + CHUNK_SIZE]
        batch = windows[cy - radius, cx - radius].reshape(len(cy), size * size)
        out[cy, cx] = _window_majority(batch)

    return out


def smooth_labels(
    labels: np.ndarray,
    smoothness: int,
    radius: int = 4,
    deadline=None
) -> np.ndarray:
    """
    Smooth zone boundaries by repeated majority vote.

    Each of the smoothness rounds reads a full snapshot of the previous
    round and writes a new array, so results do not depend on scan order.
    Stops early once a round changes nothing.

    Args:
        labels: HxW zone-id map (not modified)
        smoothness: Number of rounds
        radius: Window half-size; the window is (2 * radius + 1) squared
        deadline: Optional object with a check(stage) method, called per round

    Returns:
        New HxW zone-id map
    """
    if smoothness < 0:
        raise InputError(f"smoothness must be >= 0, got {smoothness}")
    if radius < 1:
        raise InputError(f"radius must be >= 1, got {radius}")

    current = labels
    rounds = 0
    for _ in range(int(smoothness)):
        if deadline is not None:
            deadline.check('smooth')
        smoothed = smooth_round(current, radius)
        rounds += 1
        if np.array_equal(smoothed, current):
            break
        current = smoothed

    if current is labels:
        current = labels.copy()

    logger.info(f"Smoothed boundaries in {rounds} rounds (radius {radius})")
    return current
