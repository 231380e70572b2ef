"""
Input Data Validation

Validates breaks, grid widths and episode tables before any tabulation.
Configuration and data-invariant errors abort the whole call; nothing is
tabulated from a table that fails validation.

PRINCIPLE: "Check before compute, not after failure"

Out-of-range times are NOT errors. The core silently excludes them from the
tables of the scale they fall outside of; validate_input() reports how many
there are so callers can see what the exclusion dropped.

Usage:
    from nosplit.validation import validate_input, ConfigurationError

    report = validate_input(episodes, config)
    print(report.summary())
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional

import numpy as np
import polars as pl


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, errors: List[str], warnings: List[str] = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        self.warnings = warnings or []

        message = "Input validation failed:\n" + "\n".join(
            f"  ERROR: {e}" for e in errors
        )
        if self.warnings:
            message += "\n" + "\n".join(f"  WARNING: {w}" for w in self.warnings)

        super().__init__(message)


class ConfigurationError(ValidationError):
    """Invalid breaks, grid width, field selectors or declared states."""


class DataInvariantError(ValidationError):
    """Episode rows violating exit_time >= entry_time or carrying nulls."""


@dataclass
class InputValidationReport:
    """Report from input validation."""

    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    # Counts
    total_episodes: int = 0
    n_intervals: int = 0
    out_of_range_entries: int = 0
    out_of_range_exits: int = 0

    # State lists
    entry_states: List[str] = field(default_factory=list)
    exit_states: List[str] = field(default_factory=list)

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            "=" * 60,
            "INPUT VALIDATION REPORT",
            "=" * 60,
            "",
            f"Total episodes: {self.total_episodes:,}",
            f"Intervals: {self.n_intervals}",
            f"Entry states ({len(self.entry_states)}): {', '.join(self.entry_states)}",
            f"Exit states ({len(self.exit_states)}): {', '.join(self.exit_states)}",
            f"Out-of-range entry times (excluded): {self.out_of_range_entries:,}",
            f"Out-of-range exit times (excluded): {self.out_of_range_exits:,}",
            "",
        ]

        if self.errors:
            lines.append("ERRORS:")
            for e in self.errors:
                lines.append(f"  - {e}")
            lines.append("")

        if self.warnings:
            lines.append("WARNINGS:")
            for w in self.warnings:
                lines.append(f"  - {w}")
            lines.append("")

        status = "PASSED" if self.valid else "FAILED"
        lines.append(f"Status: {status}")
        lines.append("=" * 60)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to serializable dict."""
        return {
            'valid': self.valid,
            'errors': self.errors,
            'warnings': self.warnings,
            'total_episodes': self.total_episodes,
            'n_intervals': self.n_intervals,
            'out_of_range_entries': self.out_of_range_entries,
            'out_of_range_exits': self.out_of_range_exits,
            'entry_states': self.entry_states,
            'exit_states': self.exit_states,
        }


def validate_breaks(breaks) -> np.ndarray:
    """
    Check a break sequence and return it as a float array.

    Raises:
        ConfigurationError: fewer than two values, non-finite values,
            or values that are not strictly increasing
    """
    if breaks is None:
        raise ConfigurationError("breaks must be provided")

    arr = np.asarray(breaks, dtype=float).flatten()

    if arr.size < 2:
        raise ConfigurationError(
            f"breaks must contain at least two values, got {arr.size}"
        )
    if not np.all(np.isfinite(arr)):
        raise ConfigurationError("breaks must be finite")

    steps = np.diff(arr)
    if np.any(steps <= 0):
        bad = int(np.argmax(steps <= 0))
        raise ConfigurationError(
            f"breaks must be strictly increasing "
            f"(breaks[{bad}]={arr[bad]} >= breaks[{bad + 1}]={arr[bad + 1]})"
        )

    return arr


def validate_width(width) -> float:
    """Check a Lexis grid width (finite, > 0)."""
    try:
        w = float(width)
    except (TypeError, ValueError):
        raise ConfigurationError(f"grid width must be a number, got {width!r}")

    if not np.isfinite(w) or w <= 0:
        raise ConfigurationError(f"grid width must be positive, got {width!r}")

    return w


def validate_fields(episodes: pl.DataFrame, columns: List[str]) -> None:
    """Raise ConfigurationError if any selected column is missing."""
    missing = [c for c in columns if c not in episodes.columns]
    if missing:
        raise ConfigurationError(
            f"Missing episode columns: {missing} (available: {episodes.columns})"
        )


def validate_episodes(
    episodes: pl.DataFrame,
    time_columns: List[str],
    state_columns: List[str],
) -> None:
    """
    Check episode rows: no nulls, exit_time >= entry_time.

    time_columns is (entry_time, exit_time); state_columns is
    (entry_state, exit_state).

    Raises:
        ConfigurationError: a selected column is missing
        DataInvariantError: nulls, NaN times or exit before entry
    """
    validate_fields(episodes, list(time_columns) + list(state_columns))

    errors = []
    for col in list(time_columns) + list(state_columns):
        n_null = episodes[col].null_count()
        if n_null > 0:
            errors.append(f"{n_null:,} null values in '{col}'")

    for col in time_columns:
        dtype = episodes[col].dtype
        if not dtype.is_numeric():
            errors.append(f"'{col}' must be numeric, got {dtype}")
        elif dtype.is_float():
            n_nan = episodes.filter(pl.col(col).is_nan()).height
            if n_nan > 0:
                errors.append(f"{n_nan:,} NaN values in '{col}'")

    if errors:
        raise DataInvariantError(errors)

    entry_col, exit_col = time_columns
    backwards = episodes.filter(pl.col(exit_col) < pl.col(entry_col))
    if backwards.height > 0:
        first = backwards.row(0, named=True)
        raise DataInvariantError([
            f"{backwards.height:,} episode(s) with {exit_col} < {entry_col} "
            f"(first: {entry_col}={first[entry_col]}, {exit_col}={first[exit_col]})"
        ])


def validate_input(
    episodes,
    config,
    raise_on_error: bool = True,
    verbose: bool = False,
) -> InputValidationReport:
    """
    Validate an episode table against an AggregationConfig.

    Checks:
        1. breaks are valid
        2. selected columns exist, no nulls, exit_time >= entry_time
        3. counts out-of-range entry and exit times (warnings only)

    Args:
        episodes: Episode table (polars, pandas or dict of columns)
        config: AggregationConfig
        raise_on_error: If True, raise the underlying error on failure
        verbose: If True, print the report

    Returns:
        InputValidationReport with validation results

    Raises:
        ConfigurationError / DataInvariantError: if validation fails and
            raise_on_error=True
    """
    from nosplit.core.intervals import interval_index, OUT_OF_RANGE
    from nosplit.core.tabulate import as_frame

    report = InputValidationReport()
    fields = config.fields
    time_cols = [fields.entry_time, fields.exit_time]
    state_cols = [fields.entry_state, fields.exit_state]

    try:
        breaks = validate_breaks(config.breaks)
        df = as_frame(episodes)
        validate_episodes(df, time_cols, state_cols)
    except ValidationError as e:
        report.valid = False
        report.errors.extend(e.errors)
        if verbose:
            print(report.summary())
        if raise_on_error:
            raise
        return report

    report.total_episodes = df.height
    report.n_intervals = len(breaks) - 1
    report.entry_states = sorted(df[fields.entry_state].cast(pl.Utf8).unique().to_list())
    report.exit_states = sorted(df[fields.exit_state].cast(pl.Utf8).unique().to_list())

    j_in = interval_index(df[fields.entry_time].to_numpy(), breaks, config.closed_left)
    j_out = interval_index(df[fields.exit_time].to_numpy(), breaks, config.closed_left)
    report.out_of_range_entries = int(np.sum(j_in == OUT_OF_RANGE))
    report.out_of_range_exits = int(np.sum(j_out == OUT_OF_RANGE))

    if report.out_of_range_entries:
        report.warnings.append(
            f"{report.out_of_range_entries:,} entry time(s) outside "
            f"[{breaks[0]}, {breaks[-1]}] excluded from entry tables"
        )
    if report.out_of_range_exits:
        report.warnings.append(
            f"{report.out_of_range_exits:,} exit time(s) outside "
            f"[{breaks[0]}, {breaks[-1]}] excluded from exit tables"
        )

    if verbose:
        print(report.summary())

    return report
