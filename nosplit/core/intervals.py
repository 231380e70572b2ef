"""
Interval Indexer
================

Maps time values to 1-based interval indices over a break sequence.

    closed_left=True   interval j = [breaks[j-1], breaks[j])
    closed_left=False  interval j = (breaks[j-1], breaks[j]],
                       interval 1 also closed on the left

Values outside the breaks (and NaN) map to OUT_OF_RANGE (0). Boundary
equality is exact: with closed_left=True a value equal to the last break is
out of range; with closed_left=False a value equal to the first break is in
interval 1.
"""

from typing import Optional

import numpy as np


OUT_OF_RANGE = 0


def interval_index(values, breaks, closed_left: bool = True) -> np.ndarray:
    """
    Binary-search interval indices for an array of values.

    Args:
        values: Time values (any shape, flattened)
        breaks: Strictly increasing boundaries (J + 1 values)
        closed_left: Membership convention

    Returns:
        int64 array, 1..J for in-range values, OUT_OF_RANGE otherwise
    """
    values = np.asarray(values, dtype=float).flatten()
    breaks = np.asarray(breaks, dtype=float)
    n_intervals = len(breaks) - 1

    if closed_left:
        idx = np.searchsorted(breaks, values, side='right')
    else:
        idx = np.searchsorted(breaks, values, side='left')
        idx = np.where(values == breaks[0], 1, idx)

    in_range = (idx >= 1) & (idx <= n_intervals)
    return np.where(in_range, idx, OUT_OF_RANGE).astype(np.int64)


def index(value: float, breaks, closed_left: bool = True) -> Optional[int]:
    """Scalar form of interval_index(); None when out of range."""
    j = int(interval_index([value], breaks, closed_left)[0])
    return None if j == OUT_OF_RANGE else j


def interval_starts(breaks) -> np.ndarray:
    """Left boundary x_j of each interval."""
    return np.asarray(breaks, dtype=float)[:-1]


def interval_widths(breaks) -> np.ndarray:
    """Width n_j of each interval."""
    return np.diff(np.asarray(breaks, dtype=float))
