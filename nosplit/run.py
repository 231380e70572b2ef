"""
nosplit Sequencer
=================

Orchestrates the aggregation stages in dependency order.
Pure orchestration, no computation here.

    validate      configuration + episode invariants (fail fast)
    tabulate      one pass, sharded when n_shards > 1
    reconstruct   risk-set recursion, parallel across origins
    build         destination merge, drop0exp, wide pivot

run_lexis() wraps the same stages per cohort bucket and time scale.

Usage:
    from nosplit import run, run_lexis

    table = run(episodes, 'study/manifest.yaml')
    table = run(episodes, breaks=[0, 10, 20], wide=False)
    triangles = run_lexis(episodes, width=5)
"""

import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import polars as pl

from nosplit.core.config import AggregationConfig, LexisConfig, ParallelConfig
from nosplit.core.lexis import lexis_triangles
from nosplit.core.occurrence_exposure import build_table
from nosplit.core.parallel.runner import tabulate_sharded
from nosplit.core.risk_set import reconstruct
from nosplit.core.tabulate import as_frame, tabulate
from nosplit.io.manifest import (
    get_aggregation_config,
    get_lexis_config,
    get_parallel_config,
    load_manifest,
)
from nosplit.validation.input_validation import ConfigurationError, validate_input

ConfigLike = Union[None, str, Path, Dict[str, Any], AggregationConfig, LexisConfig]

_PARALLEL_KEYS = ('n_jobs', 'n_shards', 'backend')

_MANIFEST_KEYS = {'aggregation', 'lexis', 'parallel', '_manifest_path'}


def _split_overrides(overrides: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    parallel = {k: overrides.pop(k) for k in _PARALLEL_KEYS if k in overrides}
    return overrides, {k: v for k, v in parallel.items() if v is not None}


def _as_manifest(config: ConfigLike) -> Optional[Dict[str, Any]]:
    if isinstance(config, (str, Path)):
        return load_manifest(str(config))
    if isinstance(config, dict):
        return config
    return None


def resolve_config(config: ConfigLike = None, **overrides) -> Tuple[AggregationConfig, ParallelConfig]:
    """
    Turn a config object, manifest dict or manifest path plus keyword
    overrides into (AggregationConfig, ParallelConfig).

    A dict without any manifest section (aggregation, lexis, parallel) is
    read as the aggregation section itself.
    """
    overrides, parallel_overrides = _split_overrides(dict(overrides))
    manifest = _as_manifest(config)
    parallel = ParallelConfig()

    if isinstance(config, AggregationConfig):
        agg = config.with_overrides(**overrides)
    elif manifest is not None:
        if _MANIFEST_KEYS & set(manifest):
            section = dict(manifest.get('aggregation') or {})
            parallel = get_parallel_config(manifest)
            manifest = dict(manifest, aggregation={**section, **_non_null(overrides)})
            agg = get_aggregation_config(manifest)
        else:
            agg = AggregationConfig.from_dict({**manifest, **_non_null(overrides)})
    elif config is None:
        if overrides.get('breaks') is None:
            raise ConfigurationError("breaks must be provided (config or breaks=...)")
        agg = AggregationConfig(**_non_null(overrides))
    else:
        raise ConfigurationError(f"Unsupported config type: {type(config).__name__}")

    if parallel_overrides:
        parallel = ParallelConfig(**{**parallel.__dict__, **parallel_overrides})
    return agg, parallel


def resolve_lexis_config(config: ConfigLike = None, **overrides) -> Tuple[LexisConfig, ParallelConfig]:
    """Lexis counterpart of resolve_config() (reads the 'lexis' section)."""
    overrides, parallel_overrides = _split_overrides(dict(overrides))
    manifest = _as_manifest(config)
    parallel = ParallelConfig()

    if isinstance(config, LexisConfig):
        lex = config.with_overrides(**overrides)
    elif manifest is not None:
        if _MANIFEST_KEYS & set(manifest):
            section = dict(manifest.get('lexis') or {})
            parallel = get_parallel_config(manifest)
            manifest = dict(manifest, lexis={**section, **_non_null(overrides)})
            lex = get_lexis_config(manifest)
        else:
            lex = LexisConfig.from_dict({**manifest, **_non_null(overrides)})
    elif config is None:
        if overrides.get('width') is None:
            raise ConfigurationError("width must be provided (config or width=...)")
        lex = LexisConfig(**_non_null(overrides))
    else:
        raise ConfigurationError(f"Unsupported config type: {type(config).__name__}")

    if parallel_overrides:
        parallel = ParallelConfig(**{**parallel.__dict__, **parallel_overrides})
    return lex, parallel


def _non_null(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def run(
    episodes,
    config: ConfigLike = None,
    verbose: bool = False,
    **overrides,
) -> pl.DataFrame:
    """
    Build an occurrence-exposure table.

    Args:
        episodes: Episode table (polars, pandas or dict of columns)
        config: AggregationConfig, manifest dict, aggregation dict or path
            to manifest.yaml
        verbose: Print progress
        **overrides: Any AggregationConfig key (breaks, wide, drop0exp,
            closed_left, z0_tolerance, fields) or parallel key (n_jobs,
            n_shards, backend)

    Returns:
        Long or wide occurrence-exposure table

    Raises:
        ConfigurationError, DataInvariantError: before any tabulation
    """
    agg, parallel = resolve_config(config, **overrides)
    df = as_frame(episodes)
    t0 = time.time()

    if verbose:
        print("=" * 70)
        print("OCCURRENCE-EXPOSURE AGGREGATION")
        print(f"{agg.n_intervals} intervals, closed_left={agg.closed_left}, "
              f"wide={agg.wide}, drop0exp={agg.drop0exp}")
        print("=" * 70)

    report = validate_input(df, agg, raise_on_error=True)
    if verbose:
        print(f"  Episodes: {report.total_episodes:,}")
        print(f"  Entry states: {report.entry_states}")
        for w in report.warnings:
            print(f"  Warning: {w}")

    if parallel.n_shards > 1:
        tables = tabulate_sharded(
            df, agg.breaks,
            n_shards=parallel.n_shards,
            n_jobs=parallel.n_jobs,
            backend=parallel.backend,
            closed_left=agg.closed_left,
            fields=agg.fields,
            z0_tolerance=agg.z0_tolerance,
        )
    else:
        tables = tabulate(
            df, agg.breaks,
            closed_left=agg.closed_left,
            fields=agg.fields,
            z0_tolerance=agg.z0_tolerance,
            validate=False,
        )
    if verbose:
        print(f"  Tabulated: {len(tables.origins)} origins x "
              f"{len(tables.destinations)} destinations x {tables.n_intervals} intervals"
              f" ({parallel.n_shards} shard(s))")

    risk_set = reconstruct(tables, n_jobs=parallel.n_jobs, backend=parallel.backend)
    result = build_table(risk_set, tables, drop0exp=agg.drop0exp, wide=agg.wide)

    if verbose:
        print(f"  -> {result.height:,} rows x {len(result.columns)} cols "
              f"({time.time() - t0:.2f}s)")

    return result


def run_lexis(
    episodes,
    config: ConfigLike = None,
    verbose: bool = False,
    **overrides,
) -> pl.DataFrame:
    """
    Build a Lexis-triangle table.

    Args:
        episodes: Episode table with ages in entry/exit time and a cohort column
        config: LexisConfig, manifest dict, lexis dict or manifest path
        verbose: Print progress
        **overrides: Any LexisConfig key (width, closed_left, tolerance,
            fields) or parallel key (n_jobs, backend)

    Returns:
        Lexis-triangle table
    """
    lex, parallel = resolve_lexis_config(config, **overrides)
    df = as_frame(episodes)
    t0 = time.time()

    if verbose:
        print("=" * 70)
        print("LEXIS TRIANGLE AGGREGATION")
        print(f"width={lex.width}, closed_left={lex.closed_left}")
        print("=" * 70)
        print(f"  Episodes: {df.height:,}")

    result = lexis_triangles(
        df,
        lex.width,
        closed_left=lex.closed_left,
        fields=lex.fields,
        tolerance=lex.tolerance,
        n_jobs=parallel.n_jobs,
        backend=parallel.backend,
    )

    if verbose:
        n_cohorts = result['cohort'].n_unique() if result.height else 0
        print(f"  Cohorts: {n_cohorts}")
        print(f"  -> {result.height:,} triangles x {len(result.columns)} cols "
              f"({time.time() - t0:.2f}s)")

    return result
