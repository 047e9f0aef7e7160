"""
FastAPI Production Application

Main entry point for the Product View Analytics API.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from viewtrack.config import Settings, get_settings
from viewtrack.config.logging import configure_logging
from viewtrack.database.connection import close_database, get_session_factory, init_database
from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.main import create_api_app
from viewtrack.serving.cache import close_redis, init_redis

logger = structlog.get_logger(__name__)


def build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect stores, build the pipeline and run its background tasks."""
        configure_logging()
        logger.info("Starting API", app=settings.app_name, environment=settings.app_env)

        await init_database(create_schema=settings.is_development)
        redis = await init_redis()

        pipeline = ViewPipeline(get_session_factory(), redis, settings=settings)
        app.state.pipeline = pipeline
        if settings.aggregation.enable_background_tasks:
            pipeline.start()

        try:
            yield
        finally:
            logger.info("Shutting down...")
            await pipeline.stop()
            await close_redis()
            await close_database()

    return lifespan


def create_app(pipeline: Optional[ViewPipeline] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    With ``pipeline`` given, the app uses it as-is and the lifespan does not
    touch external stores.
    """
    settings = settings or (pipeline.settings if pipeline else get_settings())
    if pipeline is not None:
        app = create_api_app(settings)
        app.state.pipeline = pipeline
        return app
    return create_api_app(settings, lifespan=build_lifespan(settings))


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
