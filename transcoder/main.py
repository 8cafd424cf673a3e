"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Response

from transcoder.core.config import Settings
from transcoder.core.config import settings as default_settings
from transcoder.core.logging import setup_logging
from transcoder.core.metrics import get_content_type, get_metrics, set_app_info
from transcoder.modules.job.router import router as job_router
from transcoder.modules.job.service import TranscodeEngine


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[TranscodeEngine] = None,
) -> FastAPI:
    """Build the API application around a TranscodeEngine.

    Args:
        settings: Settings to use; defaults to the environment-loaded settings
        engine: Pre-built engine; one is created from *settings* otherwise

    Returns:
        FastAPI application whose lifespan starts and stops the engine
    """
    settings = settings or default_settings
    engine = engine or TranscodeEngine(settings)

    # Set up logging with job correlation ids
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )

    # Set application info for metrics
    set_app_info(
        version=settings.VERSION,
        environment="development" if settings.DEBUG else "production",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine.start()
        try:
            yield
        finally:
            engine.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Submit video conversion jobs and follow their progress.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "jobs", "description": "Conversion job submission, status and cancellation"},
        ],
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.settings = settings

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, object]:
        """Health check endpoint.

        Returns:
            dict: Health status plus current slot usage and queue depth
        """
        return {
            "status": "healthy",
            "running": engine.scheduler.running_count,
            "queued": engine.scheduler.queued_count,
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=get_metrics(), media_type=get_content_type())

    # Include routers
    app.include_router(job_router, prefix=settings.API_V1_PREFIX)

    return app
