"""
Main FastAPI application entry point.
Configures and initializes the Resumable Upload Client control API.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from src.core import dependencies
from src.core.config import settings
from src.core.exception_handler import register_exception_handlers
from src.core.logging_config import configure_logging
from src.api.routes import health_routes, upload_routes

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("Upload client starting, backend %s", settings.backend_base_url)
    yield
    # Only close what was actually created
    if dependencies.get_upload_manager.cache_info().currsize:
        await dependencies.get_upload_manager().aclose()
    if dependencies.get_upload_backend.cache_info().currsize:
        await dependencies.get_upload_backend().aclose()
    logger.info("Upload client stopped")


# Create FastAPI application
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="Client-side orchestrator for resumable chunked uploads",
    lifespan=lifespan
)

# Register exception handlers
register_exception_handlers(app)

# Register routes
app.include_router(health_routes.router)
app.include_router(upload_routes.router)

# Middleware to log request paths
@app.middleware("http")
async def log_request(request: Request, call_next):
    logger.debug("Request %s %s", request.method, request.url.path)
    response = await call_next(request)
    return response


# For local development
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
