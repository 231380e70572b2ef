"""
Destination Pivot: long (one row per destination) <-> wide (to_<state>).

Wide column names are data-dependent: one to_<state> column per declared
destination, in declared order. Labels stay a mapping (destination -> column)
until this boundary.

Pure computation. DataFrame in, DataFrame out. No file I/O.
"""

from typing import Dict, List, Optional, Sequence

import polars as pl

PREFIX = 'to_'

VALUE_COLUMN = 'W_k'


def destination_columns(destinations: Sequence[str]) -> Dict[str, str]:
    """Map each destination label to its wide column name."""
    return {d: f"{PREFIX}{d}" for d in destinations}


def wide_destinations(wide: pl.DataFrame) -> List[str]:
    """Recover destination labels from to_<state> columns, in column order."""
    return [c[len(PREFIX):] for c in wide.columns if c.startswith(PREFIX)]


def to_wide(
    long: pl.DataFrame,
    destinations: Optional[Sequence[str]] = None,
    index: Optional[Sequence[str]] = None,
) -> pl.DataFrame:
    """
    Pivot long rows (..., destination, W_k) into to_<state> columns.

    Args:
        long: Long table with 'destination' and 'W_k' columns
        destinations: Column set to produce (default: observed, sorted).
            Destinations absent from a group get 0.
        index: Key columns (default: every other column, in order)

    Returns:
        One row per index key, ordered by the index
    """
    if destinations is None:
        destinations = sorted(long['destination'].unique().to_list())
    if index is None:
        index = [c for c in long.columns if c not in ('destination', VALUE_COLUMN)]
    index = list(index)

    columns = destination_columns(destinations)
    agg_exprs = [
        pl.col(VALUE_COLUMN)
        .filter(pl.col('destination') == dest)
        .sum()
        .alias(col_name)
        for dest, col_name in columns.items()
    ]

    return (
        long.group_by(index, maintain_order=True)
        .agg(agg_exprs)
        .sort(index[:2] if len(index) >= 2 else index)
    )


def to_long(wide: pl.DataFrame) -> pl.DataFrame:
    """
    Unpivot to_<state> columns back to (destination, W_k) rows.

    Returns:
        Long table ordered by the leading two index columns, then destination
    """
    value_cols = [c for c in wide.columns if c.startswith(PREFIX)]
    index = [c for c in wide.columns if c not in value_cols]

    parts = [
        wide.select(
            index
            + [
                pl.lit(col[len(PREFIX):]).alias('destination'),
                pl.col(col).alias(VALUE_COLUMN),
            ]
        )
        for col in value_cols
    ]
    if not parts:
        return wide.with_columns(
            pl.lit(None, dtype=pl.Utf8).alias('destination'),
            pl.lit(None, dtype=pl.Int64).alias(VALUE_COLUMN),
        ).head(0)

    order = (index[:2] if len(index) >= 2 else index) + ['destination']
    return pl.concat(parts).sort(order)
