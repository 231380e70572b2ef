"""
Parallel partition runners (joblib).

Tabulation is additive over episode shards, the risk-set recursion is
independent across origin states, and Lexis cohort buckets are independent
of each other.
"""

from .runner import map_partitions, shard_frame, tabulate_sharded

__all__ = [
    'map_partitions',
    'shard_frame',
    'tabulate_sharded',
]
