"""
Event Tabulator
===============

One pass over the unexpanded episodes producing the additive summary tables
the risk-set recursion needs:

    entries       (origin, j)          Z, Z0, Lz
    exits         (origin, j)          W, Lw
    destinations  (origin, dest, j)    W_k
    co-occurrence (origin, j)          ZW

    Z   episodes entering origin in interval j
    Z0  ... of which exactly at the interval's left boundary
    Lz  sum(entry_time - x_j) over those entries
    W   episodes leaving origin in interval j
    Lw  sum(x_j + n_j - exit_time) over those exits
    W_k exits to a given destination
    ZW  episodes whose entry AND exit both fall in interval j

Tables are dense arenas indexed by (state_index, interval_index[, dest_index])
so every declared state appears in every interval, zero-filled. Extra memory
is O(states x intervals x destinations), independent of the episode count.

Out-of-range times contribute to no table of this scale. An episode with an
out-of-range entry or exit is never counted in ZW.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl

from nosplit.core.config import EpisodeFields
from nosplit.core.intervals import (
    interval_index,
    interval_starts,
    interval_widths,
    OUT_OF_RANGE,
)
from nosplit.validation.input_validation import (
    ConfigurationError,
    validate_breaks,
    validate_episodes,
)

logger = logging.getLogger(__name__)


@dataclass
class SummaryTables:
    """
    Dense summary arenas for one break sequence and one StateSet.

    Arrays of shape (S, J): Z, Z0, Lz, W, Lw, ZW.
    Array of shape (S, D, J): W_k.
    """
    breaks: np.ndarray
    closed_left: bool
    origins: List[str]
    destinations: List[str]
    Z: np.ndarray
    Z0: np.ndarray
    Lz: np.ndarray
    W: np.ndarray
    Lw: np.ndarray
    ZW: np.ndarray
    W_k: np.ndarray

    @property
    def n_intervals(self) -> int:
        return len(self.breaks) - 1

    def compatible_with(self, other: 'SummaryTables') -> bool:
        return (
            self.closed_left == other.closed_left
            and self.origins == other.origins
            and self.destinations == other.destinations
            and np.array_equal(self.breaks, other.breaks)
        )

    def __add__(self, other: 'SummaryTables') -> 'SummaryTables':
        if not isinstance(other, SummaryTables):
            return NotImplemented
        if not self.compatible_with(other):
            raise ConfigurationError(
                "Cannot merge summary tables built over different breaks, "
                "conventions or state sets"
            )
        return SummaryTables(
            breaks=self.breaks,
            closed_left=self.closed_left,
            origins=self.origins,
            destinations=self.destinations,
            Z=self.Z + other.Z,
            Z0=self.Z0 + other.Z0,
            Lz=self.Lz + other.Lz,
            W=self.W + other.W,
            Lw=self.Lw + other.Lw,
            ZW=self.ZW + other.ZW,
            W_k=self.W_k + other.W_k,
        )

    # ─────────────────────────────────────────────────────────────
    # Long views (origin, j[, destination]) ordered by origin, j
    # ─────────────────────────────────────────────────────────────

    def _grid(self) -> Dict[str, np.ndarray]:
        S, J = len(self.origins), self.n_intervals
        return {
            'origin': np.repeat(np.array(self.origins, dtype=object), J),
            'j': np.tile(np.arange(1, J + 1, dtype=np.int64), S),
        }

    def entries_frame(self) -> pl.DataFrame:
        grid = self._grid()
        return pl.DataFrame({
            'origin': grid['origin'].tolist(),
            'j': grid['j'],
            'Z': self.Z.ravel(),
            'Z0': self.Z0.ravel(),
            'Lz': self.Lz.ravel(),
        }, schema_overrides={'origin': pl.Utf8})

    def exits_frame(self) -> pl.DataFrame:
        grid = self._grid()
        return pl.DataFrame({
            'origin': grid['origin'].tolist(),
            'j': grid['j'],
            'W': self.W.ravel(),
            'Lw': self.Lw.ravel(),
        }, schema_overrides={'origin': pl.Utf8})

    def cooccurrence_frame(self) -> pl.DataFrame:
        grid = self._grid()
        return pl.DataFrame({
            'origin': grid['origin'].tolist(),
            'j': grid['j'],
            'ZW': self.ZW.ravel(),
        }, schema_overrides={'origin': pl.Utf8})

    def destinations_frame(self) -> pl.DataFrame:
        S, D, J = self.W_k.shape
        return pl.DataFrame({
            'origin': np.repeat(np.array(self.origins, dtype=object), D * J).tolist(),
            'destination': np.tile(
                np.repeat(np.array(self.destinations, dtype=object), J), S
            ).tolist(),
            'j': np.tile(np.arange(1, J + 1, dtype=np.int64), S * D),
            'W_k': self.W_k.ravel(),
        }, schema_overrides={'origin': pl.Utf8, 'destination': pl.Utf8})


def as_frame(episodes) -> pl.DataFrame:
    """Accept polars, pandas or a dict of columns; return polars."""
    if isinstance(episodes, pl.DataFrame):
        return episodes
    import pandas as pd

    if isinstance(episodes, pd.DataFrame):
        return pl.from_pandas(episodes)
    return pl.DataFrame(episodes)


def state_set(
    episodes: pl.DataFrame,
    fields: Optional[EpisodeFields] = None,
) -> Dict[str, List[str]]:
    """
    Observed StateSet.

    origins: sorted distinct entry states.
    destinations: sorted union of entry and exit states, so the intrastate
    (origin, origin) cell exists for every origin.
    """
    fields = fields or EpisodeFields()
    entry = episodes[fields.entry_state].cast(pl.Utf8).unique().to_list()
    exit_ = episodes[fields.exit_state].cast(pl.Utf8).unique().to_list()
    return {
        'origins': sorted(entry),
        'destinations': sorted(set(entry) | set(exit_)),
    }


def _encode(labels: np.ndarray, declared: Sequence[str], role: str) -> np.ndarray:
    """Map labels to positions in the declared state list."""
    if labels.size == 0:
        return np.zeros(0, dtype=np.int64)
    uniq, inverse = np.unique(labels, return_inverse=True)
    lookup = {s: i for i, s in enumerate(declared)}
    missing = [u for u in uniq if u not in lookup]
    if missing:
        raise ConfigurationError(
            f"Undeclared {role} state(s): {missing} (declared: {list(declared)})"
        )
    codes = np.array([lookup[u] for u in uniq], dtype=np.int64)
    return codes[inverse.reshape(-1)]


def tabulate(
    episodes,
    breaks,
    closed_left: bool = True,
    fields: Optional[EpisodeFields] = None,
    origins: Optional[Sequence[str]] = None,
    destinations: Optional[Sequence[str]] = None,
    z0_tolerance: float = 0.0,
    validate: bool = True,
) -> SummaryTables:
    """
    Build the summary tables from unexpanded episodes.

    Args:
        episodes: Episode table (polars, pandas or dict of columns)
        breaks: Strictly increasing interval boundaries
        closed_left: Interval membership convention
        fields: Column selectors
        origins: Declared origin states (default: observed entry states)
        destinations: Declared destination states (default: observed
            entry and exit states)
        z0_tolerance: 0 for exact "entered at interval start" matching
        validate: Check episode rows first (exit >= entry, no nulls)

    Returns:
        SummaryTables

    Raises:
        ConfigurationError: bad breaks, missing columns, undeclared states
        DataInvariantError: bad episode rows
    """
    fields = fields or EpisodeFields()
    breaks = validate_breaks(breaks)
    df = as_frame(episodes)

    if validate:
        validate_episodes(df, fields.time_columns, fields.state_columns)

    observed = None
    if origins is None or destinations is None:
        observed = state_set(df, fields)
    origins = list(origins) if origins is not None else observed['origins']
    destinations = list(destinations) if destinations is not None else observed['destinations']

    S, D, J = len(origins), len(destinations), len(breaks) - 1
    starts = interval_starts(breaks)
    ends = starts + interval_widths(breaks)

    entry_time = df[fields.entry_time].cast(pl.Float64).to_numpy()
    exit_time = df[fields.exit_time].cast(pl.Float64).to_numpy()
    s = _encode(df[fields.entry_state].cast(pl.Utf8).to_numpy(), origins, 'entry')
    d = _encode(df[fields.exit_state].cast(pl.Utf8).to_numpy(), destinations, 'exit')

    j_in = interval_index(entry_time, breaks, closed_left)
    j_out = interval_index(exit_time, breaks, closed_left)

    # Entries
    ok = j_in != OUT_OF_RANGE
    flat = s[ok] * J + (j_in[ok] - 1)
    start = starts[j_in[ok] - 1]
    lateness = entry_time[ok] - start
    if z0_tolerance > 0:
        at_start = np.abs(lateness) <= z0_tolerance
    else:
        at_start = entry_time[ok] == start

    Z = np.bincount(flat, minlength=S * J).reshape(S, J)
    Z0 = np.bincount(flat[at_start], minlength=S * J).reshape(S, J)
    Lz = np.bincount(flat, weights=lateness, minlength=S * J).reshape(S, J)

    # Exits
    ok = j_out != OUT_OF_RANGE
    flat = s[ok] * J + (j_out[ok] - 1)
    earliness = ends[j_out[ok] - 1] - exit_time[ok]

    W = np.bincount(flat, minlength=S * J).reshape(S, J)
    Lw = np.bincount(flat, weights=earliness, minlength=S * J).reshape(S, J)

    flat_k = (s[ok] * D + d[ok]) * J + (j_out[ok] - 1)
    W_k = np.bincount(flat_k, minlength=S * D * J).reshape(S, D, J)

    # Co-occurrence: both ends in range and in the same interval
    same = (j_in != OUT_OF_RANGE) & (j_out != OUT_OF_RANGE) & (j_in == j_out)
    flat = s[same] * J + (j_in[same] - 1)
    ZW = np.bincount(flat, minlength=S * J).reshape(S, J)

    logger.debug(
        "tabulated %d episodes into %d origins x %d destinations x %d intervals",
        df.height, S, D, J,
    )

    return SummaryTables(
        breaks=breaks,
        closed_left=closed_left,
        origins=origins,
        destinations=destinations,
        Z=Z.astype(np.int64),
        Z0=Z0.astype(np.int64),
        Lz=Lz.astype(float),
        W=W.astype(np.int64),
        Lw=Lw.astype(float),
        ZW=ZW.astype(np.int64),
        W_k=W_k.astype(np.int64),
    )


def merge_tables(tables: Sequence[SummaryTables]) -> SummaryTables:
    """Sum partial tables built over disjoint shards of the episodes."""
    tables = list(tables)
    if not tables:
        raise ValueError("merge_tables() needs at least one table")
    merged = tables[0]
    for t in tables[1:]:
        merged = merged + t
    return merged
