"""
Tests for the single-pass event tabulator.

Validates:
    1. Entry / exit / destination / co-occurrence tables on a known scenario
    2. Zero completion over declared states x intervals
    3. Out-of-range exclusion per time field
    4. Shard merge by summation reproduces the single pass
"""

import numpy as np
import polars as pl
import pytest

from nosplit.core.config import EpisodeFields
from nosplit.core.tabulate import merge_tables, state_set, tabulate
from nosplit.validation import ConfigurationError


# ─────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────

def _scenario():
    return pl.DataFrame({
        'entry_time': [0.0, 0.0, 5.0],
        'entry_state': ['alive', 'alive', 'alive'],
        'exit_time': [5.0, 15.0, 12.0],
        'exit_state': ['dead', 'censored', 'dead'],
    })


def _random_episodes(n=500, seed=3):
    rng = np.random.default_rng(seed)
    entry = rng.uniform(0, 50, n)
    exit_ = np.minimum(entry + rng.exponential(8, n), 59.5)
    origin = rng.choice(['healthy', 'sick'], n)
    dest = np.where(origin == 'healthy',
                    rng.choice(['sick', 'dead'], n),
                    rng.choice(['healthy', 'dead'], n))
    return pl.DataFrame({
        'entry_time': entry,
        'entry_state': origin,
        'exit_time': exit_,
        'exit_state': dest,
    })


# ─────────────────────────────────────────────────────────────────────
# Known scenario
# ─────────────────────────────────────────────────────────────────────

class TestScenario:

    def setup_method(self):
        self.t = tabulate(_scenario(), [0, 10, 20])

    def test_state_set(self):
        assert self.t.origins == ['alive']
        assert self.t.destinations == ['alive', 'censored', 'dead']

    def test_entries(self):
        assert self.t.Z[0].tolist() == [3, 0]
        assert self.t.Z0[0].tolist() == [2, 0]
        assert self.t.Lz[0].tolist() == pytest.approx([5.0, 0.0])

    def test_exits(self):
        assert self.t.W[0].tolist() == [1, 2]
        assert self.t.Lw[0].tolist() == pytest.approx([5.0, 13.0])

    def test_destination_exits(self):
        W_k = self.t.W_k[0]
        assert W_k[0].tolist() == [0, 0]      # alive
        assert W_k[1].tolist() == [0, 1]      # censored
        assert W_k[2].tolist() == [1, 1]      # dead

    def test_cooccurrence(self):
        assert self.t.ZW[0].tolist() == [1, 0]

    def test_long_views(self):
        entries = self.t.entries_frame()
        assert entries.columns == ['origin', 'j', 'Z', 'Z0', 'Lz']
        assert entries['j'].to_list() == [1, 2]
        dest = self.t.destinations_frame()
        assert dest.height == 1 * 3 * 2
        row = dest.filter(
            (pl.col('destination') == 'censored') & (pl.col('j') == 2)
        )
        assert row['W_k'][0] == 1


# ─────────────────────────────────────────────────────────────────────
# Completion and declared states
# ─────────────────────────────────────────────────────────────────────

class TestCompletion:

    def test_declared_states_get_zero_rows(self):
        t = tabulate(
            _scenario(), [0, 10, 20, 30],
            origins=['alive', 'ill'],
            destinations=['alive', 'censored', 'dead', 'ill'],
        )
        assert t.Z.shape == (2, 3)
        assert t.W_k.shape == (2, 4, 3)
        assert t.Z[1].sum() == 0
        assert t.W[0, 2] == 0
        assert t.entries_frame().height == 6

    def test_undeclared_state_rejected(self):
        with pytest.raises(ConfigurationError):
            tabulate(_scenario(), [0, 10, 20], origins=['ill'])

    def test_integer_state_labels_are_strings(self):
        df = _scenario().with_columns(
            pl.Series('entry_state', [1, 1, 1]),
            pl.Series('exit_state', [2, 3, 2]),
        )
        t = tabulate(df, [0, 10, 20])
        assert t.origins == ['1']
        assert t.destinations == ['1', '2', '3']

    def test_custom_fields(self):
        df = _scenario().rename({
            'entry_time': 'tin', 'exit_time': 'tout',
            'entry_state': 'from', 'exit_state': 'to',
        })
        fields = EpisodeFields(entry_time='tin', entry_state='from',
                               exit_time='tout', exit_state='to')
        t = tabulate(df, [0, 10, 20], fields=fields)
        assert t.Z[0].tolist() == [3, 0]

    def test_state_set_helper(self):
        states = state_set(_scenario())
        assert states == {
            'origins': ['alive'],
            'destinations': ['alive', 'censored', 'dead'],
        }


# ─────────────────────────────────────────────────────────────────────
# Out-of-range exclusion
# ─────────────────────────────────────────────────────────────────────

class TestOutOfRange:

    def setup_method(self):
        df = pl.DataFrame({
            'entry_time': [-5.0, 15.0, 2.0],
            'entry_state': ['a', 'a', 'a'],
            'exit_time': [5.0, 25.0, 8.0],
            'exit_state': ['dead', 'dead', 'dead'],
        })
        self.t = tabulate(df, [0, 10, 20])

    def test_entry_before_first_break_not_counted(self):
        assert self.t.Z[0].tolist() == [1, 1]

    def test_exit_after_last_break_not_counted(self):
        assert self.t.W[0].tolist() == [2, 0]
        assert self.t.W_k[0, self.t.destinations.index('dead')].tolist() == [2, 0]

    def test_excluded_from_cooccurrence(self):
        # only the (2, 8) episode has both ends inside one interval
        assert self.t.ZW[0].tolist() == [1, 0]

    def test_exit_on_last_break_closed_left(self):
        df = pl.DataFrame({
            'entry_time': [10.0], 'entry_state': ['a'],
            'exit_time': [20.0], 'exit_state': ['dead'],
        })
        left = tabulate(df, [0, 10, 20], closed_left=True)
        right = tabulate(df, [0, 10, 20], closed_left=False)
        assert left.W[0].tolist() == [0, 0]
        assert left.Z0[0].tolist() == [0, 1]
        assert right.W[0].tolist() == [0, 1]
        assert right.Z[0].tolist() == [1, 0]
        assert right.Z0[0].tolist() == [0, 0]
        assert right.Lz[0].tolist() == pytest.approx([10.0, 0.0])


# ─────────────────────────────────────────────────────────────────────
# Z0 matching
# ─────────────────────────────────────────────────────────────────────

def test_z0_exact_by_default_tolerance_opt_in():
    df = pl.DataFrame({
        'entry_time': [10.0 + 1e-12, 10.0],
        'entry_state': ['a', 'a'],
        'exit_time': [15.0, 15.0],
        'exit_state': ['b', 'b'],
    })
    exact = tabulate(df, [0, 10, 20])
    loose = tabulate(df, [0, 10, 20], z0_tolerance=1e-9)
    assert exact.Z0[0].tolist() == [0, 1]
    assert loose.Z0[0].tolist() == [0, 2]


# ─────────────────────────────────────────────────────────────────────
# Additivity
# ─────────────────────────────────────────────────────────────────────

def test_shards_merge_to_single_pass():
    df = _random_episodes()
    breaks = np.arange(0, 61, 10)
    states = state_set(df)
    full = tabulate(df, breaks)
    parts = [
        tabulate(df.slice(lo, 125), breaks, **states)
        for lo in range(0, df.height, 125)
    ]
    merged = merge_tables(parts)
    for name in ('Z', 'Z0', 'W', 'ZW', 'W_k'):
        assert np.array_equal(getattr(merged, name), getattr(full, name)), name
    assert np.allclose(merged.Lz, full.Lz)
    assert np.allclose(merged.Lw, full.Lw)


def test_merge_rejects_different_breaks():
    df = _scenario()
    with pytest.raises(ConfigurationError):
        tabulate(df, [0, 10, 20]) + tabulate(df, [0, 5, 20])
