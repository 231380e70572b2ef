"""
Manifest: parse manifest.yaml into aggregation config.

    fields:          # optional column selectors
      entry_time: age_in
      entry_state: from
      exit_time: age_out
      exit_state: to
      cohort: birth
    aggregation:
      breaks: [0, 10, 20]
      wide: true
      drop0exp: true
      closed_left: true
      z0_tolerance: 0.0
    lexis:
      width: 5
      tolerance: 1.0e-8
    parallel:
      n_jobs: 1
      n_shards: 1
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from nosplit.core.config import (
    AggregationConfig,
    EpisodeFields,
    LexisConfig,
    ParallelConfig,
)
from nosplit.validation.input_validation import ConfigurationError


def load_manifest(data_path: str) -> Dict[str, Any]:
    """
    Load manifest.yaml.

    Tries:
        1. data_path itself (if it's a .yaml file)
        2. data_path/manifest.yaml
    """
    p = Path(data_path)

    if p.is_file() and p.suffix in ('.yaml', '.yml'):
        manifest_path = p
    else:
        manifest_path = p / 'manifest.yaml'

    if not manifest_path.exists():
        raise FileNotFoundError(f"No manifest.yaml in {data_path}")

    with open(manifest_path) as f:
        manifest = yaml.safe_load(f) or {}

    if not isinstance(manifest, dict):
        raise ConfigurationError(f"{manifest_path} must contain a mapping")

    manifest['_manifest_path'] = str(manifest_path)
    return manifest


def get_fields(manifest: Dict[str, Any]) -> EpisodeFields:
    """Column selectors (defaults when the section is absent)."""
    return EpisodeFields.from_dict(manifest.get('fields'))


def get_aggregation_config(manifest: Dict[str, Any]) -> AggregationConfig:
    """Parse the 'aggregation' section."""
    section = manifest.get('aggregation')
    if section is None:
        raise ConfigurationError("manifest missing 'aggregation' section")
    return AggregationConfig.from_dict(section, fields=get_fields(manifest))


def get_lexis_config(manifest: Dict[str, Any]) -> Optional[LexisConfig]:
    """Parse the 'lexis' section, or None if absent."""
    section = manifest.get('lexis')
    if section is None:
        return None
    if isinstance(section, dict) and 'closed_left' not in section:
        agg = manifest.get('aggregation')
        if isinstance(agg, dict) and 'closed_left' in agg:
            section = dict(section, closed_left=agg['closed_left'])
    return LexisConfig.from_dict(section, fields=get_fields(manifest))


def get_parallel_config(manifest: Dict[str, Any]) -> ParallelConfig:
    """Parse the 'parallel' section (defaults when absent)."""
    return ParallelConfig.from_dict(manifest.get('parallel'))
