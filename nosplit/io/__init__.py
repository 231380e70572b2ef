"""Configuration I/O (manifest.yaml)."""

from .manifest import (
    load_manifest,
    get_fields,
    get_aggregation_config,
    get_lexis_config,
    get_parallel_config,
)

__all__ = [
    'load_manifest',
    'get_fields',
    'get_aggregation_config',
    'get_lexis_config',
    'get_parallel_config',
]
