"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from mev_pipeline.api.health import router as health_router
from mev_pipeline.cache import close_redis, init_redis
from mev_pipeline.config.settings import Settings, settings
from mev_pipeline.pipeline.orchestrator import MEVPipeline, create_pipeline_from_settings

logger = logging.getLogger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    pipeline: Optional[MEVPipeline] = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the pipeline on startup and drain it on shutdown."""
        logger.info("Starting MEV pipeline service")

        if app_settings.publish_events_to_redis:
            await init_redis(app_settings.redis_url)

        app.state.pipeline = pipeline or create_pipeline_from_settings(app_settings)
        await app.state.pipeline.start()
        logger.info("System startup complete")

        yield

        logger.info("Shutting down MEV pipeline service")
        await app.state.pipeline.stop()
        if app_settings.publish_events_to_redis:
            await close_redis()
        logger.info("System shutdown complete")

    app = FastAPI(
        title="MEV Pipeline API",
        description="Opportunity detection, valuation and bundle submission pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = app_settings

    # Include API routers
    app.include_router(health_router, tags=["health"])

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    uvicorn.run(
        "mev_pipeline.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
    )
