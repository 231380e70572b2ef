"""
Aggregation configuration.

Configuration objects own their validation: an AggregationConfig with bad
breaks, or a LexisConfig with a non-positive width, cannot be constructed.
Every option is threaded explicitly through each call (closed_left in
particular), never captured globally, because the Lexis extension runs the
same core with different scales in one invocation.
"""

from dataclasses import dataclass, field, fields as dc_fields, replace
from typing import Dict, List, Optional, Any

import numpy as np

from nosplit.validation.input_validation import (
    ConfigurationError,
    validate_breaks,
    validate_width,
)


@dataclass(frozen=True)
class EpisodeFields:
    """Column selectors for the episode table."""
    entry_time: str = 'entry_time'
    entry_state: str = 'entry_state'
    exit_time: str = 'exit_time'
    exit_state: str = 'exit_state'
    cohort: str = 'cohort'

    @property
    def time_columns(self) -> List[str]:
        return [self.entry_time, self.exit_time]

    @property
    def state_columns(self) -> List[str]:
        return [self.entry_state, self.exit_state]

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'EpisodeFields':
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"fields must be a mapping, got {type(raw).__name__}")
        _check_keys(cls, raw, 'fields')
        return cls(**{k: str(v) for k, v in raw.items()})


@dataclass
class AggregationConfig:
    """
    Occurrence-exposure aggregation options.

    Attributes:
        breaks: Strictly increasing interval boundaries
        wide: Pivot destinations to to_<state> columns
        drop0exp: Remove rows with zero exposure (O == 0)
        closed_left: [b, b') intervals if True, (b, b'] otherwise
        z0_tolerance: 0 = exact equality for "entered at interval start";
            > 0 accepts |entry_time - start| <= z0_tolerance
        fields: Episode column selectors
    """
    breaks: List[float]
    wide: bool = True
    drop0exp: bool = True
    closed_left: bool = True
    z0_tolerance: float = 0.0
    fields: EpisodeFields = field(default_factory=EpisodeFields)

    def __post_init__(self):
        self.breaks = validate_breaks(self.breaks).tolist()
        self.z0_tolerance = float(self.z0_tolerance)
        if not np.isfinite(self.z0_tolerance) or self.z0_tolerance < 0:
            raise ConfigurationError(
                f"z0_tolerance must be >= 0, got {self.z0_tolerance}"
            )
        if isinstance(self.fields, dict):
            self.fields = EpisodeFields.from_dict(self.fields)

    @property
    def n_intervals(self) -> int:
        return len(self.breaks) - 1

    def with_overrides(self, **overrides) -> 'AggregationConfig':
        """Copy with some keys replaced (None values are ignored)."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        _check_keys(type(self), overrides, 'aggregation')
        return replace(self, **overrides)

    @classmethod
    def from_dict(
        cls,
        raw: Dict[str, Any],
        fields: Optional[EpisodeFields] = None,
    ) -> 'AggregationConfig':
        """Build from a manifest 'aggregation' section."""
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"aggregation section must be a mapping, got {type(raw).__name__}"
            )
        raw = dict(raw)
        if 'breaks' not in raw:
            raise ConfigurationError("aggregation section requires 'breaks'")
        if 'fields' in raw:
            raw['fields'] = EpisodeFields.from_dict(raw['fields'])
        elif fields is not None:
            raw['fields'] = fields
        _check_keys(cls, raw, 'aggregation')
        return cls(**raw)


@dataclass
class LexisConfig:
    """
    Lexis-triangle aggregation options.

    Attributes:
        width: Common grid width of the cohort, age and period axes
        closed_left: Interval convention forwarded to both scales
        tolerance: Differenced values below this are clamped to zero
        fields: Episode column selectors; entry_time / exit_time are ages
            and fields.cohort holds the birth time
    """
    width: float
    closed_left: bool = True
    tolerance: float = 1e-8
    fields: EpisodeFields = field(default_factory=EpisodeFields)

    def __post_init__(self):
        self.width = validate_width(self.width)
        self.tolerance = float(self.tolerance)
        if not np.isfinite(self.tolerance) or self.tolerance < 0:
            raise ConfigurationError(f"tolerance must be >= 0, got {self.tolerance}")
        if isinstance(self.fields, dict):
            self.fields = EpisodeFields.from_dict(self.fields)

    def with_overrides(self, **overrides) -> 'LexisConfig':
        overrides = {k: v for k, v in overrides.items() if v is not None}
        _check_keys(type(self), overrides, 'lexis')
        return replace(self, **overrides)

    @classmethod
    def from_dict(
        cls,
        raw: Dict[str, Any],
        fields: Optional[EpisodeFields] = None,
    ) -> 'LexisConfig':
        """Build from a manifest 'lexis' section."""
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"lexis section must be a mapping, got {type(raw).__name__}"
            )
        raw = dict(raw)
        if 'width' not in raw:
            raise ConfigurationError("lexis section requires 'width'")
        if 'fields' in raw:
            raw['fields'] = EpisodeFields.from_dict(raw['fields'])
        elif fields is not None:
            raw['fields'] = fields
        _check_keys(cls, raw, 'lexis')
        return cls(**raw)


@dataclass
class ParallelConfig:
    """joblib settings: n_jobs=1 runs everything in-process."""
    n_jobs: int = 1
    n_shards: int = 1
    backend: Optional[str] = None

    def __post_init__(self):
        self.n_jobs = int(self.n_jobs)
        self.n_shards = int(self.n_shards)
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero")
        if self.n_shards < 1:
            raise ConfigurationError(f"n_shards must be >= 1, got {self.n_shards}")

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'ParallelConfig':
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"parallel section must be a mapping, got {type(raw).__name__}"
            )
        _check_keys(cls, raw, 'parallel')
        return cls(**raw)


def _check_keys(cls, raw: Dict[str, Any], section: str) -> None:
    known = {f.name for f in dc_fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in {section}: {unknown} (recognized: {sorted(known)})"
        )
