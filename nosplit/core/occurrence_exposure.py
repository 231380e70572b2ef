"""
Occurrence-Exposure Table Builder
=================================

Joins per-destination exit counts onto the reconstructed risk set and
shapes the output.

Long layout (one row per origin x interval x destination):
    origin, destination, j, x, n, Z, W, P, O, W_k

Wide layout (one row per origin x interval):
    origin, j, x, n, Z, W, P, O, to_<state>...

The (origin, origin) cell carries I_j (subjects still in the origin at the
end of interval j), not a tabulated exit count. Every other cell is the
tabulated W_k, so sum over destinations != origin of W_k equals W when no
episode exits into its own entry state. Such an exit is counted in W but its
(origin, origin) cell is overwritten, leaving the sum short by that count.

Options:
    drop0exp  remove rows with O == 0 (applied before pivoting)
    wide      pivot destinations to to_<state> columns
"""

import logging
from typing import Optional, Sequence

import polars as pl

from nosplit.core.config import AggregationConfig, EpisodeFields
from nosplit.core.pivot import to_wide
from nosplit.core.risk_set import reconstruct
from nosplit.core.tabulate import SummaryTables, tabulate

logger = logging.getLogger(__name__)


LONG_COLUMNS = ['origin', 'destination', 'j', 'x', 'n', 'Z', 'W', 'P', 'O', 'W_k']

INDEX_COLUMNS = ['origin', 'j', 'x', 'n', 'Z', 'W', 'P', 'O']


def build_table(
    risk_set: pl.DataFrame,
    tables: SummaryTables,
    drop0exp: bool = True,
    wide: bool = True,
) -> pl.DataFrame:
    """
    Merge the risk set with destination exits.

    Args:
        risk_set: Output of reconstruct()
        tables: The SummaryTables the risk set was reconstructed from
        drop0exp: Drop rows with zero exposure
        wide: Pivot to to_<state> columns

    Returns:
        Long or wide occurrence-exposure table ordered by
        (origin, j[, destination])
    """
    dest_rank = pl.DataFrame(
        {'destination': tables.destinations, '_rank': list(range(len(tables.destinations)))},
        schema={'destination': pl.Utf8, '_rank': pl.Int64},
    )

    long = (
        tables.destinations_frame()
        .join(dest_rank, on='destination', how='left')
        .join(
            risk_set.select(['origin', 'j', 'x', 'n', 'Z', 'W', 'P', 'O', 'I']),
            on=['origin', 'j'],
            how='inner',
        )
        .with_columns(
            pl.when(pl.col('destination') == pl.col('origin'))
            .then(pl.col('I'))
            .otherwise(pl.col('W_k'))
            .alias('W_k')
        )
        .sort(['origin', 'j', '_rank'])
        .select(LONG_COLUMNS)
    )

    if drop0exp:
        long = long.filter(pl.col('O') != 0)

    if not wide:
        return long

    return to_wide(long, destinations=tables.destinations, index=INDEX_COLUMNS)


def occurrence_exposure(
    episodes,
    breaks,
    wide: bool = True,
    drop0exp: bool = True,
    closed_left: bool = True,
    fields: Optional[EpisodeFields] = None,
    origins: Optional[Sequence[str]] = None,
    destinations: Optional[Sequence[str]] = None,
    z0_tolerance: float = 0.0,
    n_jobs: int = 1,
    backend: Optional[str] = None,
) -> pl.DataFrame:
    """
    Episodes in, occurrence-exposure table out (tabulate -> reconstruct -> build).

    See tabulate() for the input arguments and build_table() for the output
    layout.
    """
    tables = tabulate(
        episodes,
        breaks,
        closed_left=closed_left,
        fields=fields,
        origins=origins,
        destinations=destinations,
        z0_tolerance=z0_tolerance,
    )
    risk_set = reconstruct(tables, n_jobs=n_jobs, backend=backend)
    return build_table(risk_set, tables, drop0exp=drop0exp, wide=wide)


def from_config(episodes, config: AggregationConfig, **kwargs) -> pl.DataFrame:
    """occurrence_exposure() with options taken from an AggregationConfig."""
    return occurrence_exposure(
        episodes,
        config.breaks,
        wide=config.wide,
        drop0exp=config.drop0exp,
        closed_left=config.closed_left,
        fields=config.fields,
        z0_tolerance=config.z0_tolerance,
        **kwargs,
    )
