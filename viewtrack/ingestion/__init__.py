"""
View Ingestion Module
"""
from .dedup import DedupStore
from .ingestor import ViewIngestor, ViewStart, IngestResult, EndResult
from .ingress import ViewIngress, ClientContext, StartOutcome
from .rate_limit import TokenBucketLimiter

__all__ = [
    "DedupStore",
    "ViewIngestor",
    "ViewStart",
    "IngestResult",
    "EndResult",
    "ViewIngress",
    "ClientContext",
    "StartOutcome",
    "TokenBucketLimiter",
]
