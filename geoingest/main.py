"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory. It sets up CORS
middleware, includes the upload and layer routers, exposes a health check
endpoint, and wires the ingestion core together in the application
lifespan: logging, repositories, the pipeline task runner and the upload
lifecycle manager. Pipelines still running at shutdown are awaited.

Example:
    The application can be run with uvicorn:
        $ uvicorn geoingest.main:app --reload

    Or imported and used programmatically:
        >>> from geoingest.main import app
        >>> # Use app in ASGI server
"""

import contextlib
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors
from loguru import logger

from geoingest.api import layers, uploads
from geoingest.core import config, tasks
from geoingest.core import logging as app_logging
from geoingest.db import database
from geoingest.services import uploads as upload_service


def build_manager(
    settings: config.Settings,
) -> upload_service.UploadLifecycleManager:
    """Construct the upload lifecycle manager from settings.

    Args:
        settings: Application settings.

    Returns:
        Manager backed by the PostgreSQL repositories and a task runner
        bounded by ``max_concurrent_pipelines``.
    """
    return upload_service.UploadLifecycleManager(
        settings,
        database.get_upload_repository(settings),
        database.get_catalog_repository(settings),
        tasks.PipelineTaskRunner(settings.max_concurrent_pipelines),
    )


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Build the ingestion core on startup and drain it on shutdown."""
    settings = config.get_settings()
    app_logging.setup_logging(settings.log_level, settings.log_dir)
    manager = build_manager(settings)
    app.state.manager = manager
    logger.info("Ingestion service started")
    try:
        yield
    finally:
        pending = manager.runner.in_flight()
        if pending:
            logger.info(f"Waiting for {len(pending)} pipeline(s) to finish")
        await manager.runner.drain()
        logger.info("Ingestion service stopped")


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Sets up CORS middleware, includes API routers for uploads and layers,
    and adds a health check endpoint. CORS origins are configured from
    settings, allowing cross-origin requests from specified domains.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from geoingest.main import app
    """
    settings = config.get_settings()
    app = fastapi.FastAPI(title="GeoIngest", version="0.1.0", lifespan=lifespan)

    app.include_router(uploads.router)
    app.include_router(layers.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
