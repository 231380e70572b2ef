"""
Lexis Triangle Aggregator
=========================

Recovers per-Lexis-triangle exposure and transition counts from two
one-dimensional aggregations per birth-cohort bucket.

Within the strip of cohort bucket [C, C + w), with ages starting at A0,
triangles are numbered along increasing age and period:

    t = 2k - 1   age cell k, earlier period   ("lower")
    t = 2k       age cell k, later period     ("upper")

Age interval k covers triangles 2k-1 and 2k; period interval m (periods
counted from C + A0) covers triangles 2m-2 and 2m-1. Running the core on
the age scale gives cumulative values at t = 2k, on the period scale at
t = 2m - 1. First-differencing the merged sequence recovers each triangle:

    v[1] = c[1]
    v[i] = c[i] - v[i-1]

Triangles are never counted directly. Differences below `tolerance`
(floating-point noise) are clamped to zero.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import polars as pl

from nosplit.core.config import EpisodeFields, LexisConfig
from nosplit.core.occurrence_exposure import build_table
from nosplit.core.parallel.runner import map_partitions
from nosplit.core.pivot import destination_columns
from nosplit.core.risk_set import reconstruct
from nosplit.core.tabulate import as_frame, state_set, tabulate
from nosplit.validation.input_validation import (
    DataInvariantError,
    validate_episodes,
    validate_fields,
    validate_width,
)

logger = logging.getLogger(__name__)

COHORT_INDEX = '_cohort_index'


def grid_index(values, width: float) -> np.ndarray:
    """
    Index of the nearest lower multiple of width.

    The quotient is rounded to absorb division noise, then corrected so that
    width * idx <= value < width * (idx + 1) holds with the same float
    products the grids are built from.
    """
    values = np.asarray(values, dtype=float)
    idx = np.floor(np.round(values / width, 9)).astype(np.int64)
    idx = np.where(width * idx > values, idx - 1, idx)
    return np.where(width * (idx + 1) <= values, idx + 1, idx)


def quantize(values, width: float) -> np.ndarray:
    """Nearest lower multiple of width."""
    return width * grid_index(values, width)


@dataclass
class LexisGrid:
    """
    Aligned cohort, age and period grids, all integer multiples of width.

    Attributes:
        width: Grid width
        cohort_lo, cohort_hi: First and last cohort bucket index
        age_lo: Index of the lowest age break (A0 = width * age_lo)
        n_ages: Number of age intervals K
    """
    width: float
    cohort_lo: int
    cohort_hi: int
    age_lo: int
    n_ages: int

    @property
    def n_triangles(self) -> int:
        return 2 * self.n_ages

    @property
    def cohort_indices(self) -> np.ndarray:
        return np.arange(self.cohort_lo, self.cohort_hi + 1, dtype=np.int64)

    @property
    def cohort_breaks(self) -> np.ndarray:
        return self.width * np.arange(self.cohort_lo, self.cohort_hi + 2)

    @property
    def age_breaks(self) -> np.ndarray:
        return self.width * np.arange(self.age_lo, self.age_lo + self.n_ages + 1)

    @property
    def period_breaks(self) -> np.ndarray:
        return self.width * np.arange(
            self.cohort_lo + self.age_lo,
            self.cohort_hi + self.age_lo + self.n_ages + 2,
        )

    def cohort_start(self, cohort_index: int) -> float:
        return self.width * cohort_index

    def period_breaks_for(self, cohort_index: int) -> np.ndarray:
        """Period grid restricted to periods >= C + A0 (K + 1 intervals)."""
        ages = self.width * np.arange(self.age_lo, self.age_lo + self.n_ages + 2)
        return self.cohort_start(cohort_index) + ages


def build_grid(cohort, age_in, age_out, width: float) -> LexisGrid:
    """
    Build grids wide enough to cover every observed cohort and age.

    The top age break lies strictly above the oldest exit age.
    """
    width = validate_width(width)
    cohort_idx = grid_index(cohort, width)
    age_lo = int(grid_index(np.min(age_in), width))
    age_hi = int(grid_index(np.max(age_out), width)) + 1
    return LexisGrid(
        width=width,
        cohort_lo=int(cohort_idx.min()),
        cohort_hi=int(cohort_idx.max()),
        age_lo=age_lo,
        n_ages=age_hi - age_lo,
    )


def _cohort_cumulative(
    episodes: pl.DataFrame,
    cohort_index: int,
    grid: LexisGrid,
    closed_left: bool,
    fields: EpisodeFields,
    origins: List[str],
    destinations: List[str],
) -> pl.DataFrame:
    """Age-scale and period-scale cumulative rows for one cohort bucket."""
    value_cols = ['O'] + list(destination_columns(destinations).values())

    def _run(frame: pl.DataFrame, breaks: np.ndarray) -> pl.DataFrame:
        tables = tabulate(
            frame, breaks, closed_left=closed_left, fields=fields,
            origins=origins, destinations=destinations, validate=False,
        )
        return build_table(reconstruct(tables), tables, drop0exp=False, wide=True)

    by_age = _run(episodes, grid.age_breaks).select(
        ['origin', (2 * pl.col('j')).alias('triangle_id')]
        + [pl.col(c).cast(pl.Float64) for c in value_cols]
    )

    in_period = episodes.with_columns(
        (pl.col(fields.cohort) + pl.col(fields.entry_time)).alias(fields.entry_time),
        (pl.col(fields.cohort) + pl.col(fields.exit_time)).alias(fields.exit_time),
    )
    by_period = (
        _run(in_period, grid.period_breaks_for(cohort_index))
        .select(
            ['origin', (2 * (pl.col('j') - 1) + 1).alias('triangle_id')]
            + [pl.col(c).cast(pl.Float64) for c in value_cols]
        )
        .filter(pl.col('triangle_id') <= grid.n_triangles)
    )

    return (
        pl.concat([by_age, by_period])
        .with_columns(pl.lit(cohort_index, dtype=pl.Int64).alias(COHORT_INDEX))
    )


def lexis_surface(
    grid: LexisGrid,
    origins: Sequence[str],
) -> pl.DataFrame:
    """Every (origin, cohort bucket, triangle_id) the grids define."""
    n_cohorts = len(grid.cohort_indices)
    n_tri = grid.n_triangles
    per_origin = n_cohorts * n_tri
    return pl.DataFrame({
        'origin': np.repeat(np.array(list(origins), dtype=object), per_origin).tolist(),
        COHORT_INDEX: np.tile(np.repeat(grid.cohort_indices, n_tri), len(origins)),
        'triangle_id': np.tile(
            np.arange(1, n_tri + 1, dtype=np.int64), n_cohorts * len(origins)
        ),
    }, schema_overrides={'origin': pl.Utf8})


def difference_triangles(
    cumulative: pl.DataFrame,
    value_cols: Sequence[str],
    tolerance: float = 1e-8,
) -> pl.DataFrame:
    """
    First-difference merged cumulative values within each (origin, cohort).

    v[i] = c[i] - v[i-1] unrolls to the alternating sum
    v[i] = (-1)^i * sum_{k<=i} (-1)^k c[k], computed as a cumulative sum
    over each partition in triangle order.
    """
    keys = ['origin', COHORT_INDEX]
    sign = pl.when(pl.col('triangle_id') % 2 == 0).then(1.0).otherwise(-1.0)

    ordered = cumulative.sort(keys + ['triangle_id'])
    differenced = ordered.with_columns([
        (sign * (sign * pl.col(c)).cum_sum().over(keys)).alias(c)
        for c in value_cols
    ])
    n_negative = sum(int((differenced[c] < -tolerance).sum()) for c in value_cols)
    if n_negative > 0:
        logger.debug(
            "clamped %d differenced value(s) below -%s to zero; cumulative "
            "inputs are not aligned to the grid", n_negative, tolerance,
        )
    return differenced.with_columns([
        pl.when(pl.col(c) < tolerance).then(0.0).otherwise(pl.col(c)).alias(c)
        for c in value_cols
    ])


def lexis_triangles(
    episodes,
    width: float,
    closed_left: bool = True,
    fields: Optional[EpisodeFields] = None,
    tolerance: float = 1e-8,
    origins: Optional[Sequence[str]] = None,
    destinations: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    backend: Optional[str] = None,
) -> pl.DataFrame:
    """
    Aggregate episodes into Lexis triangles.

    Args:
        episodes: Episode table; fields.entry_time / fields.exit_time are
            ages, fields.cohort is the birth time
        width: Common grid width
        closed_left: Interval convention for both scales
        fields: Column selectors
        tolerance: Clamp threshold for differenced values
        origins, destinations: Declared StateSet (default: observed)
        n_jobs: joblib workers across cohort buckets
        backend: joblib backend

    Returns:
        DataFrame: origin, cohort, period, age, triangle_id, triangle,
        O, to_<state>... ordered by (origin, cohort, triangle_id)

    Raises:
        ConfigurationError: non-positive width, missing columns
        DataInvariantError: bad episode rows or null cohorts
    """
    fields = fields or EpisodeFields()
    width = validate_width(width)
    df = as_frame(episodes)
    validate_episodes(df, fields.time_columns, fields.state_columns)
    _validate_cohort(df, fields.cohort)

    observed = state_set(df, fields)
    origins = list(origins) if origins is not None else observed['origins']
    destinations = list(destinations) if destinations is not None else observed['destinations']
    value_cols = ['O'] + list(destination_columns(destinations).values())

    if df.height == 0:
        schema = {
            'origin': pl.Utf8, 'cohort': pl.Float64, 'period': pl.Float64,
            'age': pl.Float64, 'triangle_id': pl.Int64, 'triangle': pl.Utf8,
        }
        schema.update({c: pl.Float64 for c in value_cols})
        return pl.DataFrame(schema=schema)

    grid = build_grid(
        df[fields.cohort].to_numpy(),
        df[fields.entry_time].to_numpy(),
        df[fields.exit_time].to_numpy(),
        width,
    )
    logger.debug(
        "lexis grid: %d cohorts x %d ages (width %s)",
        len(grid.cohort_indices), grid.n_ages, width,
    )

    df = df.with_columns(
        pl.Series(COHORT_INDEX, grid_index(df[fields.cohort].to_numpy(), width))
    )
    buckets = df.sort(COHORT_INDEX).partition_by(COHORT_INDEX, maintain_order=True)

    cumulative = map_partitions(
        _cohort_cumulative,
        [
            (bucket.drop(COHORT_INDEX), int(bucket[COHORT_INDEX][0]), grid,
             closed_left, fields, origins, destinations)
            for bucket in buckets
        ],
        n_jobs=n_jobs,
        backend=backend,
    )

    merged = (
        lexis_surface(grid, origins)
        .join(pl.concat(cumulative), on=['origin', COHORT_INDEX, 'triangle_id'], how='left')
        .with_columns([pl.col(c).fill_null(0.0) for c in value_cols])
    )

    triangles = difference_triangles(merged, value_cols, tolerance=tolerance)

    age_cell = (pl.col('triangle_id') + 1) // 2
    period_step = pl.col('triangle_id') // 2
    cohort_start = pl.col(COHORT_INDEX).cast(pl.Float64) * width

    return (
        triangles
        .with_columns(
            cohort_start.alias('cohort'),
            (cohort_start + (period_step + grid.age_lo).cast(pl.Float64) * width).alias('period'),
            ((age_cell - 1 + grid.age_lo).cast(pl.Float64) * width).alias('age'),
            pl.when(pl.col('triangle_id') % 2 == 1)
            .then(pl.lit('lower'))
            .otherwise(pl.lit('upper'))
            .alias('triangle'),
        )
        .sort(['origin', COHORT_INDEX, 'triangle_id'])
        .select(['origin', 'cohort', 'period', 'age', 'triangle_id', 'triangle'] + value_cols)
    )


def from_config(episodes, config: LexisConfig, **kwargs) -> pl.DataFrame:
    """lexis_triangles() with options taken from a LexisConfig."""
    return lexis_triangles(
        episodes,
        config.width,
        closed_left=config.closed_left,
        fields=config.fields,
        tolerance=config.tolerance,
        **kwargs,
    )


def _validate_cohort(episodes: pl.DataFrame, column: str) -> None:
    validate_fields(episodes, [column])
    n_null = episodes[column].null_count()
    if n_null > 0:
        raise DataInvariantError([f"{n_null:,} null values in '{column}'"])
    if episodes[column].dtype.is_float():
        n_bad = episodes.filter(~pl.col(column).is_finite()).height
        if n_bad > 0:
            raise DataInvariantError([f"{n_bad:,} non-finite values in '{column}'"])
