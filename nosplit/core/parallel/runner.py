"""
Partition Runner

Maps a function over independent partitions with joblib:
    - shards of the episode table (tabulation, merged by summation)
    - origin states (risk-set recursion; never split within one origin)
    - cohort buckets (Lexis sub-pipelines)

n_jobs=1 runs in-process without a pool.
"""

import logging
from typing import Any, Callable, Iterable, List, Optional, Sequence

import numpy as np
import polars as pl

logger = logging.getLogger(__name__)


def map_partitions(
    fn: Callable[..., Any],
    partitions: Iterable[Sequence[Any]],
    n_jobs: int = 1,
    backend: Optional[str] = None,
) -> List[Any]:
    """
    Call fn(*args) for every args tuple in partitions, preserving order.

    Args:
        fn: Module-level function (picklable for process backends)
        partitions: Iterable of positional-argument tuples
        n_jobs: joblib worker count (1 = sequential, -1 = all cores)
        backend: joblib backend name (None = joblib default)

    Returns:
        List of results, one per partition, in input order
    """
    partitions = list(partitions)
    if n_jobs == 1 or len(partitions) <= 1:
        return [fn(*args) for args in partitions]

    from joblib import Parallel, delayed

    logger.debug("dispatching %d partitions on %s workers", len(partitions), n_jobs)
    return Parallel(n_jobs=n_jobs, backend=backend)(
        delayed(fn)(*args) for args in partitions
    )


def shard_frame(episodes: pl.DataFrame, n_shards: int) -> List[pl.DataFrame]:
    """Split rows into n_shards contiguous, disjoint slices."""
    n_shards = max(1, min(int(n_shards), max(episodes.height, 1)))
    bounds = np.linspace(0, episodes.height, n_shards + 1).astype(int)
    return [
        episodes.slice(int(lo), int(hi - lo))
        for lo, hi in zip(bounds[:-1], bounds[1:])
    ]


def tabulate_sharded(
    episodes,
    breaks,
    n_shards: int = 1,
    n_jobs: int = 1,
    backend: Optional[str] = None,
    closed_left: bool = True,
    fields=None,
    origins=None,
    destinations=None,
    z0_tolerance: float = 0.0,
):
    """
    Tabulate disjoint shards independently and merge by elementwise sum.

    The StateSet is resolved once over the whole table so every shard
    produces arenas of identical shape.
    """
    from nosplit.core.config import EpisodeFields
    from nosplit.core.tabulate import as_frame, merge_tables, state_set, tabulate
    from nosplit.validation.input_validation import validate_breaks, validate_episodes

    fields = fields or EpisodeFields()
    breaks = validate_breaks(breaks)
    df = as_frame(episodes)
    validate_episodes(df, fields.time_columns, fields.state_columns)

    if origins is None or destinations is None:
        observed = state_set(df, fields)
        origins = origins if origins is not None else observed['origins']
        destinations = destinations if destinations is not None else observed['destinations']

    shards = shard_frame(df, n_shards)
    partials = map_partitions(
        tabulate,
        [
            (shard, breaks, closed_left, fields, list(origins), list(destinations),
             z0_tolerance, False)
            for shard in shards
        ],
        n_jobs=n_jobs,
        backend=backend,
    )
    return merge_tables(partials)
