"""
Risk Set Reconstructor
======================

Rebuilds population-at-risk and exposure per (origin, interval) from the
summary tables, without revisiting individual episodes.

For one origin state, over intervals j = 1..J in increasing order:

    R_1     = 0
    R_{j+1} = R_j + Z_j - W_j          present just before x_j
    P_j     = R_j + Z0_j               at risk exactly at x_j
    Q_j     = R_j - W_j + ZW_j         carried over through the whole interval
    U_j     = Z_j - ZW_j               entrants who do not also leave in j
    O_j     = Q_j n_j + (Z_j + W_j - ZW_j) n_j - Lz_j - Lw_j
    I_j     = Q_j + U_j                still in origin at the end of j

O_j is the exact person-time spent in the origin within interval j.
I_j is the intrastate count substituted into the (origin, origin) cell.

R is an ordered fold within one origin and is never split across j.
Origins are independent partitions and may run in parallel.
"""

import logging
from typing import Dict

import numpy as np
import polars as pl

from nosplit.core.intervals import interval_starts, interval_widths
from nosplit.core.parallel.runner import map_partitions
from nosplit.core.tabulate import SummaryTables

logger = logging.getLogger(__name__)


RISK_SET_COLUMNS = [
    'origin', 'j', 'x', 'n',
    'Z', 'Z0', 'W', 'ZW', 'Lz', 'Lw',
    'R', 'P', 'Q', 'U', 'O', 'I',
]


def fold_origin(
    Z: np.ndarray,
    Z0: np.ndarray,
    W: np.ndarray,
    Lz: np.ndarray,
    Lw: np.ndarray,
    ZW: np.ndarray,
    widths: np.ndarray,
) -> Dict[str, np.ndarray]:
    """
    Run the recursion for a single origin state.

    All inputs are length-J arrays in interval order.

    Returns:
        dict with R, P, Q, U, O, I arrays (length J)
    """
    n_intervals = len(Z)
    R = np.zeros(n_intervals, dtype=np.int64)

    carried = 0
    for j in range(n_intervals):
        R[j] = carried
        carried = carried + Z[j] - W[j]

    P = R + Z0
    Q = R - W + ZW
    U = Z - ZW
    O = Q * widths + (Z + W - ZW) * widths - Lz - Lw
    I = Q + U

    return {'R': R, 'P': P, 'Q': Q, 'U': U, 'O': O.astype(float), 'I': I}


def reconstruct(
    tables: SummaryTables,
    n_jobs: int = 1,
    backend: str = None,
) -> pl.DataFrame:
    """
    Reconstruct the risk set for every origin.

    Args:
        tables: Output of tabulate()
        n_jobs: joblib workers across origins
        backend: joblib backend

    Returns:
        DataFrame with RISK_SET_COLUMNS, one row per (origin, j),
        ordered by origin then j
    """
    widths = interval_widths(tables.breaks)
    starts = interval_starts(tables.breaks)
    n_intervals = tables.n_intervals

    folds = map_partitions(
        fold_origin,
        [
            (tables.Z[s], tables.Z0[s], tables.W[s],
             tables.Lz[s], tables.Lw[s], tables.ZW[s], widths)
            for s in range(len(tables.origins))
        ],
        n_jobs=n_jobs,
        backend=backend,
    )

    frames = []
    for s, (origin, fold) in enumerate(zip(tables.origins, folds)):
        frames.append(pl.DataFrame({
            'origin': [origin] * n_intervals,
            'j': np.arange(1, n_intervals + 1, dtype=np.int64),
            'x': starts,
            'n': widths,
            'Z': tables.Z[s],
            'Z0': tables.Z0[s],
            'W': tables.W[s],
            'ZW': tables.ZW[s],
            'Lz': tables.Lz[s],
            'Lw': tables.Lw[s],
            **fold,
        }, schema_overrides={'origin': pl.Utf8}))

    if not frames:
        return pl.DataFrame(schema={
            'origin': pl.Utf8, 'j': pl.Int64, 'x': pl.Float64, 'n': pl.Float64,
            'Z': pl.Int64, 'Z0': pl.Int64, 'W': pl.Int64, 'ZW': pl.Int64,
            'Lz': pl.Float64, 'Lw': pl.Float64,
            'R': pl.Int64, 'P': pl.Int64, 'Q': pl.Int64, 'U': pl.Int64,
            'O': pl.Float64, 'I': pl.Int64,
        })

    result = pl.concat(frames).select(RISK_SET_COLUMNS)
    logger.debug("reconstructed risk set: %d origins x %d intervals",
                 len(tables.origins), n_intervals)
    return result
