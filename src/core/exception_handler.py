"""
Global exception handler for the upload control API.
Provides centralized error handling for all API exceptions.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from .exceptions import (
    ItemNotFoundException,
    ValidationException,
    InvalidTransitionException,
    UploadBackendException
)

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""

    @app.exception_handler(ItemNotFoundException)
    async def handle_not_found(request: Request, exc: ItemNotFoundException):
        return JSONResponse(
            status_code=404,
            content={"error": "Not Found", "message": exc.message}
        )

    @app.exception_handler(ValidationException)
    async def handle_validation_error(request: Request, exc: ValidationException):
        return JSONResponse(
            status_code=400,
            content={"error": "Validation Error", "message": exc.message}
        )

    @app.exception_handler(InvalidTransitionException)
    async def handle_invalid_transition(request: Request, exc: InvalidTransitionException):
        return JSONResponse(
            status_code=409,
            content={"error": "Conflict", "message": exc.message}
        )

    @app.exception_handler(UploadBackendException)
    async def handle_backend_error(request: Request, exc: UploadBackendException):
        return JSONResponse(
            status_code=502,
            content={"error": "Upload Backend Error", "message": exc.message}
        )

    @app.exception_handler(Exception)
    async def handle_generic_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": "An unexpected error occurred"}
        )
