"""
FastAPI Application Factory

Creates and configures the API application: middleware, exception
handlers and routers.
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from viewtrack.config import Settings, get_settings
from viewtrack.serving.api.errors import register_exception_handlers
from viewtrack.serving.api.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from viewtrack.serving.api.routes import (
    health_router,
    internal_router,
    products_router,
    subscribe_router,
    views_router,
)


def create_api_app(settings: Optional[Settings] = None, lifespan=None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Product View Analytics API",
        description="View tracking, history and per-product view analytics",
        version=settings.version,
        debug=settings.debug,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    register_exception_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(views_router, prefix="/views", tags=["Views"])
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(subscribe_router, tags=["Subscriptions"])
    app.include_router(internal_router, prefix="/internal", tags=["Internal"])

    return app
