"""FastAPI application entrypoint and configuration.

This module provides the application factory. It configures logging, CORS
middleware, the ingestion router with its error handler and a health check
endpoint. The application lifespan owns the spatial store: the connection
pool is opened at startup, the ingestion pipeline is built on top of it
and stored on ``app.state``, and the pool is closed at shutdown.

Example:
    The application can be run with uvicorn:
        $ uvicorn geoingest.main:app --reload
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

import fastapi
from fastapi import exceptions
from fastapi.middleware import cors

from geoingest.api import ingest
from geoingest.core import config, errors, logging_config
from geoingest.db import database
from geoingest.services import pipeline

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Open the spatial store for the lifetime of the application."""
    settings = config.get_settings()
    store = database.SpatialStore(settings)
    await asyncio.to_thread(store.open)
    try:
        repo = await asyncio.to_thread(database.get_layer_repository, store)
        app.state.store = store
        app.state.pipeline = pipeline.IngestionPipeline(settings, repo)
        logger.info("Ingestion pipeline ready (scratch: %s)", settings.storage_dir)
        yield
    finally:
        await asyncio.to_thread(store.close)


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    logging_config.setup_logging(settings.log_level)

    app = fastapi.FastAPI(title="GeoIngest", version="0.1.0", lifespan=lifespan)

    app.include_router(ingest.router)
    app.add_exception_handler(
        errors.IngestionError,
        ingest.ingestion_error_handler,
    )
    app.add_exception_handler(
        exceptions.RequestValidationError,
        ingest.validation_error_handler,
    )

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "ok"}

    return app


app = create_app()
