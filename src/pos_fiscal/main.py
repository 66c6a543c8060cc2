# src/pos_fiscal/main.py
"""Main entry point for the POS fiscal submission service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pos_fiscal.api.v1 import fbr_router, queue_router, system_router
from pos_fiscal.core.errors import (
    CATEGORY_CONFIGURATION,
    CATEGORY_PROTOCOL,
    CATEGORY_TRANSIENT,
    CATEGORY_VALIDATION,
    FiscalError,
)
from pos_fiscal.core.settings import settings
from pos_fiscal.schemas.fbr import ErrorResponse
from pos_fiscal.services.authority import get_authority_client
from pos_fiscal.services.vault import get_credential_vault

logger = logging.getLogger(__name__)

# HTTP status returned for each error category
STATUS_BY_CATEGORY = {
    CATEGORY_VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CATEGORY_CONFIGURATION: status.HTTP_424_FAILED_DEPENDENCY,
    CATEGORY_TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    CATEGORY_PROTOCOL: status.HTTP_409_CONFLICT,
}

# Initialize FastAPI app
app = FastAPI(
    title="POS Fiscal API",
    description="FBR digital invoice submission for point-of-sale tenants",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(fbr_router, prefix="/api/v1")
app.include_router(queue_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.exception_handler(FiscalError)
async def fiscal_error_handler(request: Request, exc: FiscalError) -> JSONResponse:
    """Render submission errors as ``{category, message, errors}``."""
    status_code = STATUS_BY_CATEGORY.get(exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if exc.category == CATEGORY_TRANSIENT:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = ErrorResponse(category=exc.category, message=exc.message, errors=list(exc.errors))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.on_event("startup")
async def on_startup() -> None:
    """Load the master key now so a missing or malformed key stops the process."""
    get_credential_vault()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await get_authority_client().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "POS Fiscal API",
        "version": settings.app_version,
        "description": "FBR digital invoice submission for point-of-sale tenants",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("pos_fiscal.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
