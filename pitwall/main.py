# ============================================================================
# Pitwall - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for Pitwall, a sim-racing telemetry
analysis API.

This module sets up the FastAPI application with:
- Logging configuration
- CORS middleware for the web client
- Startup/shutdown handlers (database tables, connection cleanup)
- Consistent ErrorResponse bodies for HTTP, validation and unexpected errors
- API router integration under /api/v1

Usage:
    Direct: python -m pitwall.main
    Docker: uvicorn pitwall.main:app --host 0.0.0.0 --port 8000
    Worker: celery -A pitwall.celery_app worker -B -Q analysis,maintenance
"""

import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api.v1 import api_router
from .api.v1.models import ErrorResponse
from .celery_app import app as celery_app  # noqa: F401  binds shared tasks to the app
from .config import settings
from .core.llm.inference_client import inference_client
from .core.shared.database_service import database_service


def setup_logging() -> None:
    """Configure root logging from settings.log_level."""
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


setup_logging()
logger = logging.getLogger("pitwall.api")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Pitwall - Sim-racing Telemetry Analysis API\n\n"
        "Upload telemetry exports, run AI coaching analyses in the background "
        "and poll for the resulting reports."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
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
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    """Create tables and report collaborator availability."""
    logger.info(f"Starting Pitwall {settings.api_version} (debug={settings.debug})")

    await database_service.init_db()

    llm_status = "available" if inference_client.is_available else "unavailable"
    logger.info(f"Inference client: {llm_status} (model={inference_client.model_name})")
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down Pitwall")
    await database_service.close()


# ============================================================================
# ERROR HANDLERS
# ============================================================================


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, timestamp=datetime.now())
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "Validation Error", str(exc.errors()))


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error_response(422, "Validation Error", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"HTTP {exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all for unexpected errors. The detail is only exposed in debug mode.
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    detail = str(exc) if settings.debug else "An unexpected error occurred"
    return _error_response(500, "Internal Server Error", detail)


# ============================================================================
# ROUTES
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/", tags=["System"])
async def root() -> Dict[str, Any]:
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "docs": "/docs",
        "health": "/api/v1/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pitwall.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
