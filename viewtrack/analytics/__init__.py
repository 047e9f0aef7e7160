"""
Analytics Query Module
"""
from .history import HistoryService
from .insights import InsightGenerator, WindowAggregates
from .popular import PopularProductsService
from .related import RelatedProductsService
from .stats import ViewStatsService

__all__ = [
    "HistoryService",
    "InsightGenerator",
    "WindowAggregates",
    "PopularProductsService",
    "RelatedProductsService",
    "ViewStatsService",
]
