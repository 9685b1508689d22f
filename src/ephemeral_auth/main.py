# src/ephemeral_auth/main.py
"""Main entry point for the Ephemeral Auth service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from ephemeral_auth.api.v1 import magiclink_router, otp_router, system_router, token_router
from ephemeral_auth.core.errors import EphemeralAuthError, InternalError
from ephemeral_auth.core.settings import settings
from ephemeral_auth.services.state import get_credential_state
from ephemeral_auth.services.sweeper import CredentialSweeper

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Magic-link and one-time-code authentication",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(magiclink_router, prefix="/api/v1")
app.include_router(otp_router, prefix="/api/v1")
app.include_router(token_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.exception_handler(EphemeralAuthError)
async def handle_auth_error(request: Request, exc: EphemeralAuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.public_message, "errorCode": exc.code},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    error = InternalError()
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.public_message, "errorCode": error.code},
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = str(errors[0].get("msg", "Invalid request")) if errors else "Invalid request"
    logger.warning("Rejected request to %s: %s", request.url.path, message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message, "errorCode": "VALIDATION_ERROR"},
    )


@app.on_event("startup")
async def on_startup() -> None:
    sweeper = CredentialSweeper(get_credential_state())
    await sweeper.start()
    app.state.sweeper = sweeper


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sweeper: CredentialSweeper | None = getattr(app.state, "sweeper", None)
    if sweeper:
        await sweeper.stop()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ephemeral_auth.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
