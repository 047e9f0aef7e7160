"""
Synthetic Data Module
"""
from .generators import ProductGenerator, VisitGenerator, Visit

__all__ = [
    "ProductGenerator",
    "VisitGenerator",
    "Visit",
]
