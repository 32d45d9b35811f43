"""FieldSync - Main FastAPI Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from fieldsync import __version__
from fieldsync.api import (
    auth_router,
    device_tokens_router,
    schools_router,
    sync_router,
    surveys_router,
)
from fieldsync.config import get_settings
from fieldsync.core.logging import RequestLoggingMiddleware, get_logger, setup_logging
from fieldsync.database import init_db, close_db

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    await init_db()
    logger.info("FieldSync started", environment=settings.environment)
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title="FieldSync",
    description="Device authentication and bulk survey synchronization for field data collection",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    """Answer storage faults with a generic 500."""
    logger.error(
        "Storage error",
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error"},
    )


# Include routers
app.include_router(auth_router)
app.include_router(device_tokens_router)
app.include_router(schools_router)
app.include_router(sync_router)
app.include_router(surveys_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "FieldSync",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
