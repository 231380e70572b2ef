"""
nosplit: occurrence-exposure tables from unexpanded multistate episodes.

Public API:
    from nosplit import run, run_lexis
    run(episodes, config)          long/wide occurrence-exposure table
    run_lexis(episodes, config)    Lexis-triangle table

Episodes are never split into one row per interval. Three small summary
tables (entries, exits, same-interval co-occurrences) feed a closed-form
risk-set recursion that yields population at risk, exposure time and
transition counts per (origin, interval, destination).

Layers:
    nosplit.core        Engines (DataFrames in, DataFrames out, no file I/O)
    nosplit.io          manifest.yaml parsing
    nosplit.validation  Configuration and episode checks, error taxonomy
"""

from nosplit.run import run, run_lexis
from nosplit.core.config import (
    AggregationConfig,
    EpisodeFields,
    LexisConfig,
    ParallelConfig,
)
from nosplit.validation import (
    ConfigurationError,
    DataInvariantError,
    ValidationError,
)

__all__ = [
    "run",
    "run_lexis",
    "AggregationConfig",
    "EpisodeFields",
    "LexisConfig",
    "ParallelConfig",
    "ConfigurationError",
    "DataInvariantError",
    "ValidationError",
]
