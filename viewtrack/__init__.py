"""
Product View Analytics

View ingestion, deduplication, rollups, history and per-product analytics.
"""

__version__ = "1.0.0"
