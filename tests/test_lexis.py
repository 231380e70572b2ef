"""
Tests for Lexis-triangle aggregation.

Validates:
    1. Grid construction (aligned cohort / age / period multiples of width)
    2. A single-episode surface computed by hand
    3. Per-triangle exposure against exact line-segment geometry
    4. Triangle pairs sum back to the single-scale age aggregation
    5. Clamping of differencing noise (and logging of misaligned inputs)
    6. Closed-right boundaries and values just below a grid multiple
"""

import logging
from collections import defaultdict

import numpy as np
import polars as pl
import pytest

from nosplit.core.config import EpisodeFields
from nosplit.core.lexis import (
    COHORT_INDEX,
    build_grid,
    difference_triangles,
    grid_index,
    lexis_triangles,
    quantize,
)
from nosplit.core.occurrence_exposure import occurrence_exposure
from nosplit.validation import ConfigurationError, DataInvariantError


WIDTH = 5.0


# ─────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────

def _random_cohorts(n=300, seed=21):
    rng = np.random.default_rng(seed)
    age_in = rng.uniform(0, 30, n)
    return pl.DataFrame({
        'cohort': rng.uniform(1900, 1920, n),
        'entry_time': age_in,
        'entry_state': ['alive'] * n,
        'exit_time': age_in + rng.uniform(0, 15, n),
        'exit_state': rng.choice(['dead', 'censored'], n),
    })


def _boundary_cohorts(n=200, seed=8):
    """Whole-year births; every exit lies on an age or a period boundary."""
    rng = np.random.default_rng(seed)
    cohort = np.round(rng.uniform(1900, 1920, n))
    age_in = rng.uniform(0, 30, n)
    age_out = age_in + rng.uniform(0, 15, n)
    on_age = WIDTH * np.ceil(age_out / WIDTH)
    on_period = WIDTH * np.ceil((cohort + age_out) / WIDTH) - cohort
    return pl.DataFrame({
        'cohort': cohort,
        'entry_time': age_in,
        'entry_state': ['alive'] * n,
        'exit_time': np.where(rng.random(n) < 0.5, on_age, on_period),
        'exit_state': rng.choice(['dead', 'censored'], n),
    })


def _grid_for(df: pl.DataFrame, width: float):
    return build_grid(
        df['cohort'].to_numpy(),
        df['entry_time'].to_numpy(),
        df['exit_time'].to_numpy(),
        width,
    )


def _triangle_reference(df: pl.DataFrame, width: float, grid):
    """Exact time each episode spends in each (cohort, triangle)."""
    exposure = defaultdict(float)
    A0 = grid.age_lo * width
    for row in df.iter_rows(named=True):
        c, a0, a1 = row['cohort'], row['entry_time'], row['exit_time']
        ci = int(grid_index([c], width)[0])
        C = ci * width
        for k in range(1, grid.n_ages + 1):
            lo = A0 + (k - 1) * width
            hi = lo + width
            # lower triangle: c + a < C + A0 + k * width
            split = C + A0 + k * width - c
            exposure[(ci, 2 * k - 1)] += max(0.0, min(a1, split) - max(a0, lo))
            exposure[(ci, 2 * k)] += max(0.0, min(a1, hi) - max(a0, split))
    return exposure


def _assert_geometry(df: pl.DataFrame, out: pl.DataFrame, width: float, grid):
    ref = _triangle_reference(df, width, grid)
    for row in out.iter_rows(named=True):
        ci = int(round(row['cohort'] / width))
        expected = ref.get((ci, row['triangle_id']), 0.0)
        assert row['O'] == pytest.approx(expected, abs=1e-6), row


def _assert_pairs_match_age_scale(df, out, width, grid, closed_left=True):
    """Triangles 2k-1 and 2k add up to age interval k of their cohort."""
    bucket = df.with_columns(
        pl.Series('_ci', grid_index(df['cohort'].to_numpy(), width))
    )
    for ci in bucket['_ci'].unique().to_list():
        sub = bucket.filter(pl.col('_ci') == ci).drop('_ci')
        by_age = occurrence_exposure(
            sub, grid.age_breaks, drop0exp=False, closed_left=closed_left,
            destinations=['alive', 'censored', 'dead'],
        ).sort('j')
        tri = (
            out
            .filter((pl.col('cohort') / width).round(0) == ci)
            .with_columns(((pl.col('triangle_id') + 1) // 2).alias('j'))
            .group_by('j')
            .agg(pl.col('O').sum(), pl.col('to_dead').sum(), pl.col('to_censored').sum())
            .sort('j')
        )
        assert tri['O'].to_list() == pytest.approx(by_age['O'].to_list(), abs=1e-6)
        assert tri['to_dead'].to_list() == pytest.approx(
            by_age['to_dead'].cast(pl.Float64).to_list(), abs=1e-6)
        assert tri['to_censored'].to_list() == pytest.approx(
            by_age['to_censored'].cast(pl.Float64).to_list(), abs=1e-6)


# ─────────────────────────────────────────────────────────────────────
# Grid
# ─────────────────────────────────────────────────────────────────────

class TestGrid:

    def test_quantize(self):
        assert quantize([1903.0, 1905.0, 1909.99], WIDTH).tolist() == [1900.0, 1905.0, 1905.0]

    @pytest.mark.parametrize('width', [0.1, 0.2, 5.0, 10.0])
    def test_index_brackets_value(self, width):
        # quotients of these land within rounding noise of an integer
        values = np.array([0.3, 0.6, 0.7, 1.0, 2.9999999999, 10.0 - 1e-11,
                           1904.9999999999998, 1905.0, 1917.25])
        idx = grid_index(values, width)
        assert (width * idx <= values).all()
        assert (values < width * (idx + 1)).all()

    def test_value_just_below_multiple(self):
        assert grid_index([10.0 - 1e-11], 10.0).tolist() == [0]
        assert grid_index([1904.9999999999998, 1905.0], WIDTH).tolist() == [380, 381]
        grid = build_grid([0.0], [10.0 - 1e-11], [15.0], 10.0)
        assert grid.age_lo == 0
        assert grid.age_breaks[0] <= 10.0 - 1e-11

    @pytest.mark.parametrize('cohort, age_in, age_out, width', [
        (0.0, 10.0 - 1e-11, 15.0, 10.0),
        (5.0 - 1e-11, 0.0, 12.0, 5.0),
        (1904.9999999999998, 3.0, 17.0, 5.0),
    ])
    def test_episode_near_boundary_stays_on_grid(self, cohort, age_in, age_out, width):
        df = pl.DataFrame({
            'cohort': [cohort],
            'entry_time': [age_in],
            'entry_state': ['alive'],
            'exit_time': [age_out],
            'exit_state': ['dead'],
        })
        out = lexis_triangles(df, width)
        assert out['O'].sum() == pytest.approx(age_out - age_in, abs=1e-6)
        assert out['to_dead'].sum() == pytest.approx(1.0)
        _assert_geometry(df, out, width, _grid_for(df, width))

    def test_build_grid(self):
        grid = build_grid(
            cohort=[1903.0, 1911.5],
            age_in=[2.0, 7.0],
            age_out=[8.0, 21.0],
            width=WIDTH,
        )
        assert (grid.cohort_lo, grid.cohort_hi) == (380, 382)
        assert grid.age_lo == 0
        assert grid.n_ages == 5
        assert grid.n_triangles == 10
        assert grid.cohort_breaks.tolist() == [1900.0, 1905.0, 1910.0, 1915.0]
        assert grid.age_breaks.tolist() == [0.0, 5.0, 10.0, 15.0, 20.0, 25.0]
        assert grid.period_breaks_for(380).tolist() == [
            1900.0, 1905.0, 1910.0, 1915.0, 1920.0, 1925.0, 1930.0,
        ]
        assert grid.period_breaks[0] == 1900.0
        assert grid.period_breaks[-1] == 1940.0

    def test_age_grid_starts_at_youngest_entry(self):
        grid = build_grid([0.0], [42.0], [51.0], 10.0)
        assert grid.age_breaks.tolist() == [40.0, 50.0, 60.0]

    def test_non_positive_width(self):
        with pytest.raises(ConfigurationError):
            build_grid([0.0], [0.0], [1.0], 0)


# ─────────────────────────────────────────────────────────────────────
# Single episode
# ─────────────────────────────────────────────────────────────────────

class TestSingleEpisode:

    def setup_method(self):
        df = pl.DataFrame({
            'cohort': [0.0],
            'entry_time': [0.0],
            'entry_state': ['alive'],
            'exit_time': [20.0],
            'exit_state': ['dead'],
        })
        self.out = lexis_triangles(df, 10.0)

    def test_shape(self):
        assert self.out.columns == [
            'origin', 'cohort', 'period', 'age', 'triangle_id', 'triangle',
            'O', 'to_alive', 'to_dead',
        ]
        assert self.out['triangle_id'].to_list() == [1, 2, 3, 4, 5, 6]

    def test_exposure_on_lower_triangles(self):
        # born exactly at the cohort boundary: the life line runs along
        # the lower edge of each age-cohort cell
        assert self.out['O'].to_list() == pytest.approx([10, 0, 10, 0, 0, 0])

    def test_death_triangle(self):
        assert self.out['to_dead'].to_list() == pytest.approx([0, 0, 0, 0, 1, 0])

    def test_coordinates(self):
        assert self.out['age'].to_list() == [0.0, 0.0, 10.0, 10.0, 20.0, 20.0]
        assert self.out['period'].to_list() == [0.0, 10.0, 10.0, 20.0, 20.0, 30.0]
        assert self.out['cohort'].to_list() == [0.0] * 6
        assert self.out['triangle'].to_list() == ['lower', 'upper'] * 3


# ─────────────────────────────────────────────────────────────────────
# Random cohorts
# ─────────────────────────────────────────────────────────────────────

class TestRandomCohorts:

    def setup_method(self):
        self.df = _random_cohorts()
        self.out = lexis_triangles(self.df, WIDTH)
        self.grid = _grid_for(self.df, WIDTH)

    def test_complete_surface(self):
        n_cohorts = self.grid.cohort_hi - self.grid.cohort_lo + 1
        assert self.out.height == n_cohorts * self.grid.n_triangles

    def test_exposure_matches_geometry(self):
        _assert_geometry(self.df, self.out, WIDTH, self.grid)

    def test_triangles_sum_to_age_intervals(self):
        _assert_pairs_match_age_scale(self.df, self.out, WIDTH, self.grid)

    def test_closed_right_boundary_exits(self):
        df = _boundary_cohorts()
        out = lexis_triangles(df, WIDTH, closed_left=False)
        grid = _grid_for(df, WIDTH)
        _assert_geometry(df, out, WIDTH, grid)
        _assert_pairs_match_age_scale(df, out, WIDTH, grid, closed_left=False)
        n_dead = (df['exit_state'] == 'dead').sum()
        assert out['to_dead'].sum() == pytest.approx(float(n_dead))
        assert out['O'].sum() == pytest.approx(
            (df['exit_time'] - df['entry_time']).sum(), rel=1e-9)

    def test_values_non_negative(self):
        for col in ('O', 'to_dead', 'to_censored'):
            assert (self.out[col] >= 0).all()

    def test_parallel_matches_sequential(self):
        par = lexis_triangles(self.df, WIDTH, n_jobs=2, backend='threading')
        assert par.equals(self.out)


# ─────────────────────────────────────────────────────────────────────
# Differencing
# ─────────────────────────────────────────────────────────────────────

def test_difference_recursion_and_clamp():
    cumulative = pl.DataFrame({
        'origin': ['a'] * 4,
        COHORT_INDEX: [0] * 4,
        'triangle_id': [4, 2, 3, 1],
        'O': [5.0, 1.0 - 1e-12, 4.0, 1.0],
    })
    out = difference_triangles(cumulative, ['O'], tolerance=1e-8)
    assert out['triangle_id'].to_list() == [1, 2, 3, 4]
    # v1 = 1, v2 = -1e-12 -> 0, v3 = 4 - v2, v4 = 5 - v3
    assert out['O'].to_list() == pytest.approx([1.0, 0.0, 4.0, 1.0])


def test_large_negative_difference_is_logged(caplog):
    cumulative = pl.DataFrame({
        'origin': ['a'] * 2,
        COHORT_INDEX: [0] * 2,
        'triangle_id': [1, 2],
        'O': [5.0, 0.0],
    })
    with caplog.at_level(logging.DEBUG, logger='nosplit.core.lexis'):
        out = difference_triangles(cumulative, ['O'], tolerance=1e-8)
    assert out['O'].to_list() == [5.0, 0.0]
    assert any('clamped 1 differenced value' in r.getMessage() for r in caplog.records)


def test_noise_clamp_not_logged(caplog):
    cumulative = pl.DataFrame({
        'origin': ['a'] * 2,
        COHORT_INDEX: [0] * 2,
        'triangle_id': [1, 2],
        'O': [1.0, 1.0 - 1e-12],
    })
    with caplog.at_level(logging.DEBUG, logger='nosplit.core.lexis'):
        difference_triangles(cumulative, ['O'], tolerance=1e-8)
    assert not any('clamped' in r.getMessage() for r in caplog.records)


def test_custom_cohort_field():
    df = _random_cohorts(n=40).rename({'cohort': 'birth', 'entry_time': 'age_in'})
    fields = EpisodeFields(entry_time='age_in', cohort='birth')
    out = lexis_triangles(df, WIDTH, fields=fields)
    assert out['O'].sum() == pytest.approx(
        (df['exit_time'] - df['age_in']).sum(), rel=1e-9)


def test_null_cohort_rejected():
    df = _random_cohorts(n=5).with_columns(
        pl.when(pl.col('entry_time') > -1).then(None).otherwise(pl.col('cohort')).alias('cohort')
    )
    with pytest.raises(DataInvariantError):
        lexis_triangles(df, WIDTH)


def test_empty_episodes():
    df = _random_cohorts(n=5).head(0)
    out = lexis_triangles(df, WIDTH)
    assert out.height == 0
    assert 'O' in out.columns
