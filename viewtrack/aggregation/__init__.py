"""
Rollup Aggregation Module
"""
from .aggregator import RollupAggregator

__all__ = ["RollupAggregator"]
