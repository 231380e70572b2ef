"""
nosplit core
============

Compute engines. DataFrames in, DataFrames out, no file I/O.

Structure:
    intervals.py           - Interval index of a time value (binary search)
    tabulate.py            - Single-pass summary tables (Z, Z0, Lz, W, Lw, W_k, ZW)
    risk_set.py            - Risk-set recursion per origin (R, P, Q, U, O, I)
    occurrence_exposure.py - Destination merge, intrastate substitution, shaping
    pivot.py               - Long <-> wide (to_<state>) layouts
    lexis.py               - Lexis triangles by differencing age/period tables
    parallel/              - joblib partition runners
    config.py              - Configuration dataclasses
"""

from nosplit.core.config import (
    AggregationConfig,
    EpisodeFields,
    LexisConfig,
    ParallelConfig,
)
from nosplit.core.intervals import (
    OUT_OF_RANGE,
    index,
    interval_index,
    interval_starts,
    interval_widths,
)
from nosplit.core.tabulate import SummaryTables, tabulate, merge_tables, state_set
from nosplit.core.risk_set import fold_origin, reconstruct
from nosplit.core.occurrence_exposure import build_table, occurrence_exposure
from nosplit.core.pivot import to_long, to_wide
from nosplit.core.lexis import LexisGrid, build_grid, lexis_triangles
from nosplit.core.parallel import map_partitions, tabulate_sharded

__all__ = [
    # Configuration
    'AggregationConfig',
    'EpisodeFields',
    'LexisConfig',
    'ParallelConfig',
    # Intervals
    'OUT_OF_RANGE',
    'index',
    'interval_index',
    'interval_starts',
    'interval_widths',
    # Tabulation
    'SummaryTables',
    'tabulate',
    'merge_tables',
    'state_set',
    # Risk set
    'fold_origin',
    'reconstruct',
    # Output
    'build_table',
    'occurrence_exposure',
    'to_long',
    'to_wide',
    # Lexis
    'LexisGrid',
    'build_grid',
    'lexis_triangles',
    # Parallel
    'map_partitions',
    'tabulate_sharded',
]
