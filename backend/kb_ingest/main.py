# ============================================================================
# KB Ingest - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for KB Ingest, the knowledge-base document
ingestion and vector indexing API.

This module sets up the FastAPI application with:
- CORS middleware configuration for cross-origin requests
- Lifespan handler closing database, lock and HTTP resources
- Error handling for validation errors
- API router integration

Usage:
    Docker: uvicorn kb_ingest.main:app --host 0.0.0.0 --port 8000 --reload

Author: KB Ingest Development Team
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api.v1 import api_router
from .config import settings
from .core.search.embedding_service import embedding_service
from .core.shared.database_service import database_service
from .core.shared.lock_service import lock_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("kb_ingest.main")


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.api_title} v{settings.api_version} (debug={settings.debug})")
    logger.info(f"Embedding service: {'available' if embedding_service.is_available else 'unavailable'}")
    yield
    logger.info("Shutting down KB Ingest...")
    await lock_service.close()
    await database_service.close()


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "KB Ingest - Knowledge-Base Ingestion API\n\n"
        "Extracts files, web pages and whole websites into text, splits them into "
        "chunks, embeds them and keeps a per-knowledge-base vector index up to date."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc) -> JSONResponse:
    """
    Return request validation failures as 422 with the `{success, error}` body.

    Args:
        request: The FastAPI request object
        exc: RequestValidationError or pydantic ValidationError

    Returns:
        JSONResponse: Error body with the list of validation problems
    """
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Validation Error",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/api/health", tags=["system"])
async def health() -> Dict[str, Any]:
    """Service health including database and pgvector availability."""
    database = await database_service.health_check()
    return {
        "status": "healthy" if database.get("status") == "healthy" else "degraded",
        "version": settings.api_version,
        "database": database,
        "embeddings": embedding_service.is_available,
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/health",
    }
