"""
Knowledge Base Server Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Design Goals
------------
- Deterministic startup
- Explicit dependency initialization order
- Centralized router registration
- Global exception safety net
- Test-friendly via create_app()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .core.errors import (
    InvalidLevelError,
    RetrievalError,
    SourceBusyError,
    SourceNotFoundError,
    invalid_level_handler,
    retrieval_exception_handler,
    source_busy_handler,
    source_not_found_handler,
    unhandled_exception_handler,
)
from .embeddings.queue import indexing_queue, process_indexing_worker_task

from .api import (
    admin_routes,
    chat_routes,
    dependencies,
    health_routes,
    search_routes,
    source_routes,
)


logger = logging.getLogger("kb.app")


# ---------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build the knowledge store, prepare the schema when running on
    PostgreSQL, and start the background indexing worker.
    Shutdown: stop the worker and release database connections.
    """
    logger.info("Starting kb-search-server")

    if settings.vector_backend == "pgvector":
        from .db import create_schema

        await create_schema()

    # Build eagerly so a broken index or bad strategy fails at startup
    dependencies.get_store()
    dependencies.get_search_service()

    if settings.embedding_api_key is None:
        logger.warning("EMBEDDING_API_KEY is not set; searches will fail until it is configured")

    worker = asyncio.create_task(
        process_indexing_worker_task(dependencies.get_indexing_service(), indexing_queue)
    )
    logger.info("Configuration validated successfully")

    try:
        yield
    finally:
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

        if settings.vector_backend == "pgvector":
            from .db import get_engine

            await get_engine().dispose()

        logger.info("Shutting down kb-search-server")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory pattern allows:
    - Clean test instantiation
    - Isolated app instances for integration tests
    - Controlled dependency overrides in pytest

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="kb-search-server",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(RetrievalError, retrieval_exception_handler)
    app.add_exception_handler(SourceNotFoundError, source_not_found_handler)
    app.add_exception_handler(SourceBusyError, source_busy_handler)
    app.add_exception_handler(InvalidLevelError, invalid_level_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(search_routes.router)
    app.include_router(source_routes.router)
    app.include_router(admin_routes.router)
    app.include_router(chat_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
