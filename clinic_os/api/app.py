"""FastAPI application for ClinicOS."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_os import __version__
from clinic_os.api.middleware import RequestLoggingMiddleware
from clinic_os.api.routes import health, scheduling
from clinic_os.config import get_settings
from clinic_os.core.database import close_db, init_db
from clinic_os.scheduling.errors import SchedulingError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting ClinicOS API")

    settings = get_settings()
    if settings.debug_mode:
        await init_db()

    yield

    logger.info("Shutting down ClinicOS API")
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="ClinicOS API",
        description="Recurring appointment scheduling for multi-discipline clinics",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(scheduling.router, prefix="/api/v1", tags=["scheduling"])

    @app.exception_handler(SchedulingError)
    async def scheduling_exception_handler(request: Request, exc: SchedulingError):
        logger.warning(f"Scheduling error on {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
