"""
API Routes Module
"""
from .health import router as health_router
from .internal import router as internal_router
from .products import router as products_router
from .subscribe import router as subscribe_router
from .views import router as views_router

__all__ = [
    "health_router",
    "internal_router",
    "products_router",
    "subscribe_router",
    "views_router",
]
